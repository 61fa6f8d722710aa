"""
PsillyOps — Run edit proposal model.

Models:
    - RunEditProposal: reviewable, single-use list of step-edit operations
      derived from free text. Nothing is applied until it is confirmed.

Lifecycle states:
    PENDING → CONFIRMED | FAILED | EXPIRED
"""

import json
import uuid
from datetime import datetime, timezone

from psillyops.models import db

PROPOSAL_PENDING = "PENDING"
PROPOSAL_CONFIRMED = "CONFIRMED"
PROPOSAL_FAILED = "FAILED"
PROPOSAL_EXPIRED = "EXPIRED"

PROPOSAL_STATUSES = {PROPOSAL_PENDING, PROPOSAL_CONFIRMED, PROPOSAL_FAILED, PROPOSAL_EXPIRED}


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class RunEditProposal(db.Model):
    __tablename__ = "run_edit_proposals"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    run_id = db.Column(
        db.String(36), db.ForeignKey("production_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default=PROPOSAL_PENDING,
        comment="PENDING | CONFIRMED | FAILED | EXPIRED",
    )
    input_text = db.Column(db.Text, nullable=False)
    operations_json = db.Column(db.Text, nullable=False, default="[]")
    results_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    confirmed_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def operations(self) -> list[dict]:
        return json.loads(self.operations_json or "[]")

    @operations.setter
    def operations(self, value: list[dict]) -> None:
        self.operations_json = json.dumps(value, default=str)

    @property
    def results(self) -> list[dict] | None:
        return json.loads(self.results_json) if self.results_json else None

    @results.setter
    def results(self, value: list[dict] | None) -> None:
        self.results_json = json.dumps(value, default=str) if value is not None else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "status": self.status,
            "input_text": self.input_text,
            "operations": self.operations,
            "results": self.results,
            "error": self.error,
            "created_by": self.created_by,
            "confirmed_by": self.confirmed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }

    def __repr__(self):
        return f"<RunEditProposal {self.id} run={self.run_id} [{self.status}]>"
