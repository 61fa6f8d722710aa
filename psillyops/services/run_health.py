"""
Run health — derived, advisory flags for a production run.

Pure functions only: no database access, no side effects. Callers pass the
run status and its steps (ORM rows or plain dicts) and get three flags back.

    has_required_skips  any required step was SKIPPED
    has_stalled_step    an IN_PROGRESS step started longer ago than the threshold
    is_blocked          an active run with nothing pending or in progress
                        but not every step resolved (a consistency signal)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from psillyops.models.production import (
    RUN_ACTIVE_STATUSES,
    STEP_IN_PROGRESS,
    STEP_PENDING,
    STEP_RESOLVED_STATUSES,
    STEP_SKIPPED,
)

DEFAULT_STALL_THRESHOLD_HOURS = 4


@dataclass(frozen=True)
class RunHealth:
    has_required_skips: bool = False
    has_stalled_step: bool = False
    is_blocked: bool = False

    @property
    def needs_attention(self) -> bool:
        return self.has_required_skips or self.has_stalled_step or self.is_blocked

    def to_dict(self) -> dict:
        return {
            "has_required_skips": self.has_required_skips,
            "has_stalled_step": self.has_stalled_step,
            "is_blocked": self.is_blocked,
        }


def _field(step: Any, name: str):
    if isinstance(step, dict):
        return step.get(name)
    return getattr(step, name, None)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_run_health(
    run_status: str,
    steps: Iterable[Any],
    stall_threshold_hours: float = DEFAULT_STALL_THRESHOLD_HOURS,
    now: datetime | None = None,
) -> RunHealth:
    """Compute the health flags for one run."""
    steps = list(steps)
    now = as_utc(now) or datetime.now(timezone.utc)
    threshold = timedelta(hours=stall_threshold_hours)

    has_required_skips = any(
        _field(s, "required") and _field(s, "status") == STEP_SKIPPED for s in steps
    )

    has_stalled_step = False
    for s in steps:
        if _field(s, "status") != STEP_IN_PROGRESS:
            continue
        started = as_utc(_field(s, "started_at"))
        if started is not None and now - started > threshold:
            has_stalled_step = True
            break

    statuses = [_field(s, "status") for s in steps]
    is_blocked = (
        run_status in RUN_ACTIVE_STATUSES
        and STEP_PENDING not in statuses
        and STEP_IN_PROGRESS not in statuses
        and not all(st in STEP_RESOLVED_STATUSES for st in statuses)
    )

    return RunHealth(
        has_required_skips=has_required_skips,
        has_stalled_step=has_stalled_step,
        is_blocked=is_blocked,
    )
