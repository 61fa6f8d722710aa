"""
Audit sink — where services send their typed activity events.

Services call ``record()`` only after their own transaction has committed.
A sink failure therefore can never undo a state change; services catch it,
log it and report ``audit_recorded: False`` to the caller.
"""

from __future__ import annotations

import logging
from typing import Protocol

from psillyops.models import db
from psillyops.models.audit import write_activity
from psillyops.services.audit_events import AuditEvent

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class DatabaseAuditSink:
    """Writes one ``ActivityLog`` row per event in its own commit."""

    def record(self, event: AuditEvent) -> None:
        try:
            write_activity(
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                action=event.action,
                actor=event.actor_id,
                summary=event.summary(),
                before=event.before(),
                after=event.after(),
                details=event.details(),
                tags=event.tags,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def record_safely(sink: AuditSink, event: AuditEvent) -> bool:
    """Send ``event`` to ``sink``; return False (and log) instead of raising."""
    try:
        sink.record(event)
        return True
    except Exception:
        logger.warning(
            "Audit write failed for %s on %s/%s; state change already committed",
            event.action, event.entity_type, event.entity_id,
            exc_info=True,
        )
        return False
