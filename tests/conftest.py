"""
Shared pytest fixtures for the PsillyOps production test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - admin / operator / other_operator: Actor values
    - clock: controllable UTC clock shared by the services under test
    - service / proposals: engine + proposal layer wired to the database
    - make_product: Product + step templates factory
"""

from datetime import datetime, timedelta, timezone

import pytest

from psillyops import create_app
from psillyops.core.actor import Actor
from psillyops.models import db as _db
from psillyops.models.product import Product, ProductionStepTemplate
from psillyops.services.audit_sink import DatabaseAuditSink
from psillyops.services.production_run_service import ProductionRunService
from psillyops.services.run_edit_proposal_service import RunEditProposalService
from psillyops.services.step_template_service import SqlStepTemplateStore
from psillyops.services.tracking_token_service import DatabaseTokenIssuer

ADMIN_ID = "admin-1"
OPERATOR_ID = "operator-1"
OTHER_OPERATOR_ID = "operator-2"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Actor.for_role(ADMIN_ID, "ADMIN")


@pytest.fixture()
def operator():
    return Actor.for_role(OPERATOR_ID, "PRODUCTION")


@pytest.fixture()
def other_operator():
    return Actor.for_role(OTHER_OPERATOR_ID, "PRODUCTION")


# ── Services ─────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingAuditSink:
    """In-memory sink: keeps every event it receives."""

    def __init__(self):
        self.events = []

    def record(self, event) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class FailingAuditSink:
    """Sink that always raises, like an unreachable audit store."""

    def record(self, event) -> None:
        raise RuntimeError("audit store unavailable")


@pytest.fixture()
def clock():
    return FakeClock(datetime.now(timezone.utc))


def build_service(clock, audit=None, **overrides) -> ProductionRunService:
    return ProductionRunService(
        templates=SqlStepTemplateStore(),
        tokens=DatabaseTokenIssuer(),
        audit=audit or DatabaseAuditSink(),
        clock=clock,
        tracking_base_url="https://ops.test",
        **overrides,
    )


@pytest.fixture()
def service(clock):
    """Engine wired to the database stores and the activity log."""
    return build_service(clock)


@pytest.fixture()
def make_service(clock):
    """Factory for an engine with a substitute audit sink."""
    def _make(audit=None, **overrides):
        return build_service(clock, audit, **overrides)
    return _make


@pytest.fixture()
def recording_sink():
    return RecordingAuditSink()


@pytest.fixture()
def failing_sink():
    return FailingAuditSink()


@pytest.fixture()
def proposals(service, clock):
    return RunEditProposalService(engine=service, audit=DatabaseAuditSink(), clock=clock)


# ═════════════════════════════════════════════════════════════════════════════
# ORM Helper Factories
# ═════════════════════════════════════════════════════════════════════════════


DEFAULT_TEMPLATES = (
    ("mixing", "Mixing", True),
    ("encapsulation", "Encapsulation", True),
    ("labeling", "Labeling", False),
)


def create_product(
    *,
    name: str = "Lions Mane Capsules",
    sku: str = "LM-CAP-60",
    active: bool = True,
    templates=DEFAULT_TEMPLATES,
    orders=None,
) -> Product:
    """Create a product with step templates ``(key, label, required)``.

    ``orders`` overrides the 1..N order values, e.g. to build corrupt data.
    """
    product = Product(name=name, sku=sku, active=active)
    _db.session.add(product)
    _db.session.flush()
    orders = list(orders) if orders is not None else list(range(1, len(templates) + 1))
    for (key, label, required), order in zip(templates, orders):
        _db.session.add(ProductionStepTemplate(
            product_id=product.id, key=key, label=label, order=order, required=required,
        ))
    _db.session.commit()
    return product


@pytest.fixture()
def make_product():
    return create_product


@pytest.fixture()
def product():
    """Active product with three templates: Mixing, Encapsulation, Labeling (optional)."""
    return create_product()


@pytest.fixture()
def run(service, product, admin):
    """A freshly created PLANNED run (quantity 10) as returned by ``get_run``."""
    created = service.create_run(product.id, 10, admin)
    return service.get_run(created["run_id"])
