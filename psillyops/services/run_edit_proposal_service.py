"""
Run Edit Proposals — Service Layer.

Turns a short free-text instruction into a reviewable list of step-edit
operations for one production run. Nothing changes until the proposal is
confirmed; confirmation replays the operations through the ordinary
ProductionRunService calls with the confirming user's own permissions.

Recognised instructions (case-insensitive):
    "add a packaging step"                       → add_step
    "move packaging to the end" / "... last"     → reorder (packaging last)
    "skip the labeling step because <reason>"    → skip_step (also "since",
                                                   "with reason", "reason:")

Operations are always applied structural edits first (add, then reorder),
then the skip, since a skip takes the run out of its editable state.

Lifecycle:
    PENDING → CONFIRMED | FAILED | EXPIRED   (single use, TTL from config)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import current_app
from sqlalchemy import update

from psillyops.core.actor import Actor
from psillyops.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from psillyops.models import db
from psillyops.models.production import RUN_PLANNED, STEP_COMPLETED, STEP_PENDING
from psillyops.models.run_edit_proposal import (
    PROPOSAL_CONFIRMED,
    PROPOSAL_EXPIRED,
    PROPOSAL_FAILED,
    PROPOSAL_PENDING,
    RunEditProposal,
)
from psillyops.services.audit_events import RunEditConfirmed, RunEditProposed
from psillyops.services.audit_sink import AuditSink, DatabaseAuditSink, record_safely
from psillyops.services.production_run_service import (
    EDIT_LOCKED_MESSAGE,
    ProductionRunService,
    get_production_run_service,
)
from psillyops.services.run_health import as_utc

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 15

OP_ADD_STEP = "add_step"
OP_REORDER = "reorder"
OP_SKIP_STEP = "skip_step"

# Application order, independent of the order in the text.
_OP_SEQUENCE = (OP_ADD_STEP, OP_REORDER, OP_SKIP_STEP)

SUPPORTED_INSTRUCTIONS = (
    "add a packaging step",
    "move packaging to the end",
    "skip the labeling step because <reason>",
)

_ADD_PACKAGING_RE = re.compile(r"\badd\s+(?:a\s+|an\s+)?packaging\s+step\b", re.IGNORECASE)
_MOVE_PACKAGING_LAST_RE = re.compile(
    r"\bmove\s+(?:the\s+)?packaging(?:\s+step)?\s+to\s+(?:the\s+)?(?:end|last)\b",
    re.IGNORECASE,
)
_SKIP_LABELING_RE = re.compile(
    r"\bskip\s+(?:the\s+)?label(?:l)?ing(?:\s+step)?\s*"
    r"(?:because\b|since\b|(?:with\s+(?:the\s+|a\s+)?)?reason\b\s*:?|:)\s*(?P<reason>[^;\n]+)",
    re.IGNORECASE,
)

PACKAGING_LABEL = "Packaging"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_packaging(step: dict) -> bool:
    return "packag" in step["label"].lower() or "packag" in step["template_key"].lower()


def _is_labeling(step: dict) -> bool:
    return "label" in step["label"].lower() or "label" in step["template_key"].lower()


def _packaging_last(steps: list[dict]) -> list[str] | None:
    """Step ids with the last packaging step moved to the end; None if there is none."""
    packaging = [s for s in steps if _is_packaging(s)]
    if not packaging:
        return None
    target = packaging[-1]
    return [s["id"] for s in steps if s["id"] != target["id"]] + [target["id"]]


def parse_instruction(text: str) -> dict:
    """Extract recognised intents from ``text``.

    Returns ``{"add_packaging": bool, "move_packaging_last": bool,
    "skip_labeling": bool, "skip_labeling_reason": str | None}``. A skip
    request without a reason has ``skip_labeling`` set and no reason.
    """
    skip = _SKIP_LABELING_RE.search(text)
    reason = None
    if skip:
        reason = skip.group("reason").strip().rstrip(".,").strip() or None
    return {
        "add_packaging": bool(_ADD_PACKAGING_RE.search(text)),
        "move_packaging_last": bool(_MOVE_PACKAGING_LAST_RE.search(text)),
        "skip_labeling_reason": reason,
        "skip_labeling": bool(skip),
    }


class RunEditProposalService:
    """Propose / confirm free-text edits against one run via the engine."""

    def __init__(
        self,
        *,
        engine: ProductionRunService,
        audit: AuditSink,
        clock: Callable[[], datetime] = _utcnow,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
    ):
        self.engine = engine
        self.audit = audit
        self.clock = clock
        self.ttl_minutes = ttl_minutes

    # ── Propose ──────────────────────────────────────────────────────────

    def propose(self, run_id: str, text: str, actor: Actor) -> dict:
        """Resolve ``text`` against the run's current steps and store a PENDING proposal."""
        clean = (text or "").strip()
        if not clean:
            raise ValidationError("text is required")

        run = self.engine.get_run(run_id)
        steps = run["steps"]
        intents = parse_instruction(clean)

        if not (intents["add_packaging"] or intents["move_packaging_last"] or intents["skip_labeling"]):
            raise ValidationError(
                "Could not understand the requested edit.",
                details={"supported": list(SUPPORTED_INSTRUCTIONS)},
            )

        operations: list[dict] = []
        structural = intents["add_packaging"] or intents["move_packaging_last"]
        if structural and (run["status"] != RUN_PLANNED or any(s["status"] != STEP_PENDING for s in steps)):
            raise ValidationError(EDIT_LOCKED_MESSAGE, details={"run_status": run["status"]})

        if intents["add_packaging"]:
            operations.append({
                "op": OP_ADD_STEP,
                "label": PACKAGING_LABEL,
                "required": True,
                "description": f'Add step "{PACKAGING_LABEL}" at the end of the run',
            })

        if intents["move_packaging_last"]:
            if intents["add_packaging"]:
                # The new step does not exist yet; resolved on confirm.
                ordered_ids = None
            else:
                ordered_ids = _packaging_last(steps)
                if ordered_ids is None:
                    raise ValidationError("This run has no packaging step to move")
            operations.append({
                "op": OP_REORDER,
                "ordered_step_ids": ordered_ids,
                "description": "Move the packaging step to the end",
            })

        if intents["skip_labeling"]:
            if not intents["skip_labeling_reason"]:
                raise ValidationError("Skipping the labeling step requires a reason")
            candidates = [s for s in steps if _is_labeling(s)]
            if not candidates:
                raise ValidationError("This run has no labeling step to skip")
            labeling = next((s for s in candidates if s["status"] != STEP_COMPLETED), None)
            if labeling is None:
                raise ValidationError(
                    "The labeling step is already COMPLETED and cannot be skipped",
                    details={"step_ids": [s["id"] for s in candidates]},
                )
            operations.append({
                "op": OP_SKIP_STEP,
                "step_id": labeling["id"],
                "step_label": labeling["label"],
                "reason": intents["skip_labeling_reason"],
                "description": f'Skip "{labeling["label"]}": {intents["skip_labeling_reason"]}',
            })

        operations.sort(key=lambda op: _OP_SEQUENCE.index(op["op"]))

        proposal = RunEditProposal(
            run_id=run_id,
            status=PROPOSAL_PENDING,
            input_text=clean,
            created_by=actor.id,
            expires_at=self.clock() + timedelta(minutes=self.ttl_minutes),
        )
        proposal.operations = operations
        db.session.add(proposal)
        db.session.commit()
        logger.info("Run edit proposal %s created for run %s (%d ops)", proposal.id, run_id, len(operations))

        result = proposal.to_dict()
        result["audit_recorded"] = record_safely(self.audit, RunEditProposed(
            entity_id=run_id, actor_id=actor.id,
            proposal_id=result["id"], input_text=clean, operations=tuple(operations),
        ))
        return result

    # ── Confirm ──────────────────────────────────────────────────────────

    def _apply(self, run_id: str, op: dict, actor: Actor) -> dict:
        if op["op"] == OP_ADD_STEP:
            return self.engine.add_adhoc_step(run_id, op["label"], actor, required=op.get("required", True))
        if op["op"] == OP_REORDER:
            ordered_ids = op.get("ordered_step_ids")
            if ordered_ids is None:
                ordered_ids = _packaging_last(self.engine.get_run(run_id)["steps"])
                if ordered_ids is None:
                    raise ValidationError("This run has no packaging step to move")
            return self.engine.reorder_steps(run_id, ordered_ids, actor)
        if op["op"] == OP_SKIP_STEP:
            return self.engine.skip_step(op["step_id"], op["reason"], actor)
        raise ValidationError(f"Unknown proposal operation: {op['op']}")

    def confirm(self, proposal_id: str, actor: Actor) -> dict:
        """Apply a PENDING proposal once. Stops at the first failing operation."""
        proposal = db.session.get(RunEditProposal, proposal_id) if proposal_id else None
        if not proposal:
            raise NotFoundError(resource="RunEditProposal", resource_id=proposal_id)
        if proposal.status != PROPOSAL_PENDING:
            raise ValidationError(f"Proposal is not PENDING (current: {proposal.status})")

        now = self.clock()
        if as_utc(proposal.expires_at) < now:
            proposal.status = PROPOSAL_EXPIRED
            db.session.commit()
            raise ValidationError("Proposal has expired; request a new one")

        # Claim the proposal so a second confirm cannot replay it.
        claimed = db.session.execute(
            update(RunEditProposal)
            .where(RunEditProposal.id == proposal_id, RunEditProposal.status == PROPOSAL_PENDING)
            .values(status=PROPOSAL_CONFIRMED, confirmed_by=actor.id, confirmed_at=now)
        )
        db.session.commit()
        if claimed.rowcount != 1:
            raise ValidationError("Proposal has already been confirmed")

        run_id = proposal.run_id
        operations = proposal.operations
        results: list[dict] = []
        error: str | None = None
        try:
            for op in operations:
                outcome = self._apply(run_id, op, actor)
                results.append({"op": op["op"], "ok": True, "audit_recorded": outcome.get("audit_recorded")})
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            results.append({"op": op["op"], "ok": False, "error": error})
            if isinstance(exc, (ValidationError, ForbiddenError, NotFoundError)):
                logger.info("Run edit proposal %s failed at %s: %s", proposal_id, op["op"], error)
            else:
                logger.exception("Run edit proposal %s crashed at %s", proposal_id, op["op"])
            # The failing unit of work has rolled back; clear anything left pending.
            db.session.rollback()
            self._finish(proposal_id, PROPOSAL_FAILED, results, error)
            record_safely(self.audit, RunEditConfirmed(
                entity_id=run_id, actor_id=actor.id, proposal_id=proposal_id,
                status=PROPOSAL_FAILED, applied=len(results) - 1, error=error,
            ))
            raise

        final = self._finish(proposal_id, PROPOSAL_CONFIRMED, results, None)
        final["audit_recorded"] = record_safely(self.audit, RunEditConfirmed(
            entity_id=run_id, actor_id=actor.id, proposal_id=proposal_id,
            status=PROPOSAL_CONFIRMED, applied=len(results),
        ))
        final["run"] = self.engine.get_run(run_id)
        return final

    @staticmethod
    def _finish(proposal_id: str, status: str, results: list[dict], error: str | None) -> dict:
        proposal = db.session.get(RunEditProposal, proposal_id)
        proposal.status = status
        proposal.results = results
        proposal.error = error
        db.session.commit()
        return proposal.to_dict()


def get_run_edit_proposal_service() -> RunEditProposalService:
    cfg = current_app.config
    return RunEditProposalService(
        engine=get_production_run_service(),
        audit=DatabaseAuditSink(),
        ttl_minutes=cfg.get("RUN_EDIT_PROPOSAL_TTL_MINUTES", DEFAULT_TTL_MINUTES),
    )
