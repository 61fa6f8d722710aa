"""
PsillyOps — Production run domain models.

Models:
    - ProductionRun:      one instance of manufacturing a product in a quantity
    - ProductionRunStep:  run-scoped copy of a step template (or an ad-hoc step)
    - TrackingToken:      opaque public token resolving to a run (1:1)

Architecture:
    Product ──1:N──▶ ProductionRun ──1:N──▶ ProductionRunStep
    ProductionRun ──1:1──▶ TrackingToken

Lifecycle states:
    ProductionRun:      PLANNED → IN_PROGRESS → COMPLETED
                        PLANNED | IN_PROGRESS → BLOCKED | CANCELLED
                        BLOCKED → PLANNED | IN_PROGRESS | CANCELLED
    ProductionRunStep:  PENDING ⇄ IN_PROGRESS → COMPLETED
                        PENDING | IN_PROGRESS | SKIPPED → SKIPPED
"""

import uuid
from datetime import datetime, timezone

from psillyops.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

RUN_PLANNED = "PLANNED"
RUN_IN_PROGRESS = "IN_PROGRESS"
RUN_BLOCKED = "BLOCKED"
RUN_COMPLETED = "COMPLETED"
RUN_CANCELLED = "CANCELLED"

RUN_STATUSES = {RUN_PLANNED, RUN_IN_PROGRESS, RUN_BLOCKED, RUN_COMPLETED, RUN_CANCELLED}
RUN_TERMINAL_STATUSES = {RUN_COMPLETED, RUN_CANCELLED}
RUN_ACTIVE_STATUSES = {RUN_PLANNED, RUN_IN_PROGRESS}

STEP_PENDING = "PENDING"
STEP_IN_PROGRESS = "IN_PROGRESS"
STEP_COMPLETED = "COMPLETED"
STEP_SKIPPED = "SKIPPED"

STEP_STATUSES = {STEP_PENDING, STEP_IN_PROGRESS, STEP_COMPLETED, STEP_SKIPPED}
STEP_RESOLVED_STATUSES = {STEP_COMPLETED, STEP_SKIPPED}
STEP_OPEN_STATUSES = {STEP_PENDING, STEP_IN_PROGRESS}

TOKEN_ACTIVE = "ACTIVE"
TOKEN_REVOKED = "REVOKED"
TOKEN_STATUSES = {TOKEN_ACTIVE, TOKEN_REVOKED}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

RUN_TRANSITIONS = {
    RUN_PLANNED:     [RUN_IN_PROGRESS, RUN_BLOCKED, RUN_CANCELLED],
    RUN_IN_PROGRESS: [RUN_COMPLETED, RUN_BLOCKED, RUN_CANCELLED],
    RUN_BLOCKED:     [RUN_PLANNED, RUN_IN_PROGRESS, RUN_CANCELLED],
    RUN_COMPLETED:   [],
    RUN_CANCELLED:   [],
}

STEP_TRANSITIONS = {
    STEP_PENDING:     [STEP_IN_PROGRESS, STEP_SKIPPED],
    STEP_IN_PROGRESS: [STEP_PENDING, STEP_COMPLETED, STEP_SKIPPED],
    STEP_COMPLETED:   [],
    STEP_SKIPPED:     [STEP_SKIPPED],   # re-skip replaces the reason
}


def validate_run_transition(old_status, new_status):
    """Return True if ProductionRun status transition is valid."""
    return new_status in RUN_TRANSITIONS.get(old_status, [])


def validate_step_transition(old_status, new_status):
    """Return True if ProductionRunStep status transition is valid."""
    return new_status in STEP_TRANSITIONS.get(old_status, [])


def _iso(value):
    # SQLite drops tzinfo on the way back; stored values are always UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProductionRun
# ═════════════════════════════════════════════════════════════════════════════


class ProductionRun(db.Model):
    """
    A production run for one product and quantity.

    Status is only ever moved to COMPLETED by the service layer as a side
    effect of completing the last open step.
    """

    __tablename__ = "production_runs"
    __table_args__ = (
        db.Index("idx_production_run_status", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=RUN_PLANNED,
        comment="PLANNED | IN_PROGRESS | BLOCKED | COMPLETED | CANCELLED",
    )
    tracking_token_id = db.Column(
        db.String(36), db.ForeignKey("tracking_tokens.id", ondelete="SET NULL"),
        nullable=True, unique=True,
    )
    created_by = db.Column(db.String(64), nullable=True, comment="Actor id, null for system")
    status_reason = db.Column(db.Text, nullable=True, comment="Why the run was blocked / cancelled")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product", lazy="joined")
    tracking_token = db.relationship("TrackingToken", foreign_keys=[tracking_token_id], lazy="joined")
    steps = db.relationship(
        "ProductionRunStep",
        backref="run",
        lazy="select",
        order_by="ProductionRunStep.order",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "status": self.status,
            "status_reason": self.status_reason,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    def __repr__(self):
        return f"<ProductionRun {self.id} [{self.status}] qty={self.quantity}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProductionRunStep
# ═════════════════════════════════════════════════════════════════════════════


class ProductionRunStep(db.Model):
    """
    Mutable run-scoped step.

    ``template_key`` is the originating template key, or ``adhoc_xxxxxxxx``
    for steps added to the run after creation.
    """

    __tablename__ = "production_run_steps"
    __table_args__ = (
        db.Index("idx_run_step_run_order", "run_id", "order"),
        db.Index("idx_run_step_assignee", "assigned_to", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    run_id = db.Column(
        db.String(36), db.ForeignKey("production_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    template_key = db.Column(db.String(64), nullable=False)
    label = db.Column(db.String(200), nullable=False)
    order = db.Column(db.Integer, nullable=False, comment="1-based, contiguous within the run")
    required = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(
        db.String(20), nullable=False, default=STEP_PENDING,
        comment="PENDING | IN_PROGRESS | COMPLETED | SKIPPED",
    )

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    skipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    skip_reason = db.Column(db.Text, nullable=True)

    performed_by = db.Column(db.String(64), nullable=True, comment="Actor who last acted")
    assigned_to = db.Column(db.String(64), nullable=True, comment="Actor who claimed the step")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def snapshot(self) -> dict:
        """Structural snapshot used by edit audit entries."""
        return {
            "id": self.id,
            "key": self.template_key,
            "label": self.label,
            "order": self.order,
            "required": self.required,
            "status": self.status,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "template_key": self.template_key,
            "label": self.label,
            "order": self.order,
            "required": self.required,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "skipped_at": _iso(self.skipped_at),
            "skip_reason": self.skip_reason,
            "performed_by": self.performed_by,
            "assigned_to": self.assigned_to,
        }

    def __repr__(self):
        return f"<ProductionRunStep {self.run_id}#{self.order} {self.template_key} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. TrackingToken
# ═════════════════════════════════════════════════════════════════════════════


class TrackingToken(db.Model):
    """Globally resolvable public token (``qr_`` + 22 base62 chars)."""

    __tablename__ = "tracking_tokens"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    token = db.Column(db.String(32), nullable=False, unique=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=TOKEN_ACTIVE, comment="ACTIVE | REVOKED")
    entity_type = db.Column(db.String(30), nullable=False, default="production_run")
    entity_id = db.Column(db.String(36), nullable=False)
    redirect_url = db.Column(db.String(300), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token": self.token,
            "status": self.status,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "redirect_url": self.redirect_url,
        }

    def __repr__(self):
        return f"<TrackingToken {self.token} → {self.entity_type}/{self.entity_id}>"
