"""
Unit of work over the run + steps aggregate.

Every mutating service call follows the same shape:

    with uow_factory() as uow:
        run = uow.runs.lock_run(run_id)     # SELECT … FOR UPDATE where supported
        ... validate, mutate ...
        uow.runs.flush()
        ... re-read canonical state, build the response ...
        uow.commit()

Leaving the block without ``commit()`` (including via an exception) rolls
the session back, so a failed validation never leaves a partial write.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from sqlalchemy import func, select

from psillyops.models import db
from psillyops.models.production import (
    STEP_IN_PROGRESS,
    STEP_OPEN_STATUSES,
    ProductionRun,
    ProductionRunStep,
)

logger = logging.getLogger(__name__)


class RunRepository:
    """Queries and writes for ProductionRun / ProductionRunStep rows."""

    def __init__(self, session):
        self.session = session

    # ── Reads ────────────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> ProductionRun | None:
        return self.session.get(ProductionRun, run_id)

    def lock_run(self, run_id: str) -> ProductionRun | None:
        """Load a run holding a row lock for the rest of the transaction.

        Concurrent mutations of the same run serialise on this lock; SQLite
        ignores FOR UPDATE and serialises on its database-level write lock.
        """
        stmt = (
            select(ProductionRun)
            .where(ProductionRun.id == run_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_step(self, step_id: str) -> ProductionRunStep | None:
        return self.session.get(ProductionRunStep, step_id)

    def list_steps(self, run_id: str) -> list[ProductionRunStep]:
        stmt = (
            select(ProductionRunStep)
            .where(ProductionRunStep.run_id == run_id)
            .order_by(ProductionRunStep.order.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def find_in_progress(self, run_id: str, *, exclude_step_id: str | None = None) -> ProductionRunStep | None:
        stmt = select(ProductionRunStep).where(
            ProductionRunStep.run_id == run_id,
            ProductionRunStep.status == STEP_IN_PROGRESS,
        )
        if exclude_step_id:
            stmt = stmt.where(ProductionRunStep.id != exclude_step_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none()

    def count_unresolved(self, run_id: str) -> int:
        stmt = select(func.count(ProductionRunStep.id)).where(
            ProductionRunStep.run_id == run_id,
            ProductionRunStep.status.in_(STEP_OPEN_STATUSES),
        )
        return self.session.execute(stmt).scalar() or 0

    def max_order(self, run_id: str) -> int:
        stmt = select(func.max(ProductionRunStep.order)).where(ProductionRunStep.run_id == run_id)
        return self.session.execute(stmt).scalar() or 0

    # ── Writes ───────────────────────────────────────────────────────────

    def add(self, obj) -> None:
        self.session.add(obj)

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)


class UnitOfWork(Protocol):
    session: object
    runs: RunRepository

    def __enter__(self) -> "UnitOfWork":
        ...

    def __exit__(self, exc_type, exc, tb) -> bool | None:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


class SqlAlchemyUnitOfWork:
    """Transaction scope bound to the Flask-SQLAlchemy session."""

    def __init__(self, session=None):
        self._session = session
        self._committed = False

    def __enter__(self) -> "SqlAlchemyUnitOfWork":
        self.session = self._session if self._session is not None else db.session
        self.runs = RunRepository(self.session)
        self._committed = False
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None or not self._committed:
            self.rollback()
        return False

    def commit(self) -> None:
        self.session.commit()
        self._committed = True

    def rollback(self) -> None:
        self.session.rollback()


UnitOfWorkFactory = Callable[[], UnitOfWork]
