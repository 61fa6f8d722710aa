"""
PsillyOps — Activity log model.

Models:
    - ActivityLog: immutable, append-only audit trail for production events.
"""

import json
from datetime import datetime, timezone

from psillyops.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_ENTITY_TYPES = {"production_run", "product"}

ACTIVITY_ACTIONS = {
    # Run lifecycle
    "production_run_created",
    "production_run_cancelled",
    "production_run_blocked",
    "production_run_unblocked",
    "production_run_steps_modified",
    # Step lifecycle
    "production_step_started",
    "production_step_stopped",
    "production_step_completed",
    "production_step_skipped",
    # Assignment
    "production_step_assigned",
    "production_step_reassigned",
    # Product step templates
    "production_step_template_created",
    "production_step_template_updated",
    "production_step_template_reordered",
    "production_step_template_deleted",
    # Edit proposals
    "production_run_edit_proposed",
    "production_run_edit_confirmed",
}


def _load(raw, default):
    try:
        return json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default


class ActivityLog(db.Model):
    """
    Immutable audit trail for every production event.

    One row per action. ``before`` / ``after`` carry the changed fields,
    ``details`` carries the action-specific payload.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("idx_activity_entity", "entity_type", "entity_id"),
        db.Index("idx_activity_action", "action"),
        db.Index("idx_activity_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(30), nullable=False, comment="production_run | product")
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(64), nullable=False, default="system")
    summary = db.Column(db.String(500), nullable=False, default="")

    before_json = db.Column(db.Text, nullable=True)
    after_json = db.Column(db.Text, nullable=True)
    details_json = db.Column(db.Text, default="{}")
    tags_json = db.Column(db.Text, default="[]")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def before(self) -> dict | None:
        return _load(self.before_json, None)

    @property
    def after(self) -> dict | None:
        return _load(self.after_json, None)

    @property
    def details(self) -> dict:
        return _load(self.details_json, {})

    @property
    def tags(self) -> list[str]:
        return _load(self.tags_json, [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "summary": self.summary,
            "before": self.before,
            "after": self.after,
            "details": self.details,
            "tags": self.tags,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_activity(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str | None = None,
    summary: str = "",
    before: dict | None = None,
    after: dict | None = None,
    details: dict | None = None,
    tags: list[str] | tuple[str, ...] = (),
) -> ActivityLog:
    """
    Append a single activity row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) ActivityLog instance.
    """
    log = ActivityLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        summary=summary[:500],
        before_json=json.dumps(before, default=str) if before is not None else None,
        after_json=json.dumps(after, default=str) if after is not None else None,
        details_json=json.dumps(details or {}, default=str),
        tags_json=json.dumps(list(tags)),
    )
    db.session.add(log)
    db.session.flush()
    return log


def query_activity(entity_type: str, entity_id: str, *, since: datetime | None = None, limit: int = 200):
    """Return activity rows for one entity, newest first."""
    q = ActivityLog.query.filter_by(entity_type=entity_type, entity_id=str(entity_id))
    if since is not None:
        q = q.filter(ActivityLog.timestamp >= since)
    return q.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc()).limit(limit).all()
