"""
Production Runs — Service Layer.

Business logic for:
    - Run creation:        product templates → run + PENDING steps + tracking token
    - Step lifecycle:      start / stop / complete / skip with single-active-step rule
    - Run completion:      derived when the last open step is completed or skipped
    - Pre-start editing:   add ad-hoc / update / delete / reorder steps
    - Assignment:          claim, admin assign, "my work" queries
    - Run control:         cancel / block / unblock
    - Read side:           run detail with current step + health, listings, activity

Every mutation runs inside one unit of work over the run + steps aggregate:
locate → lock run → validate → mutate → flush → re-read → commit. The audit
event is recorded after the commit and its outcome is returned to the caller
as ``audit_recorded``.

Usage:
    from psillyops.services.production_run_service import get_production_run_service

    svc = get_production_run_service()
    run = svc.create_run(product_id, 100, actor)
    svc.claim_step(step_id, actor)
    svc.start_step(step_id, actor)
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import current_app
from sqlalchemy import and_, or_, select

from psillyops.core.actor import Actor, Capability
from psillyops.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from psillyops.models import db
from psillyops.models.audit import query_activity
from psillyops.models.production import (
    RUN_BLOCKED,
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_IN_PROGRESS,
    RUN_PLANNED,
    RUN_STATUSES,
    RUN_TERMINAL_STATUSES,
    STEP_COMPLETED,
    STEP_IN_PROGRESS,
    STEP_OPEN_STATUSES,
    STEP_PENDING,
    STEP_SKIPPED,
    ProductionRun,
    ProductionRunStep,
    validate_run_transition,
    validate_step_transition,
)
from psillyops.services.audit_events import (
    AuditEvent,
    RunBlocked,
    RunCancelled,
    RunCreated,
    RunStepsModified,
    RunUnblocked,
    StepClaimed,
    StepCompleted,
    StepReassigned,
    StepSkipped,
    StepStarted,
    StepStopped,
)
from psillyops.services.audit_sink import AuditSink, DatabaseAuditSink, record_safely
from psillyops.services.run_health import DEFAULT_STALL_THRESHOLD_HOURS, as_utc, compute_run_health
from psillyops.services.step_template_service import (
    SqlStepTemplateStore,
    StepTemplateStore,
    validate_template_orders,
)
from psillyops.services.tracking_token_service import (
    DatabaseTokenIssuer,
    TrackingTokenIssuer,
    public_token_url,
)
from psillyops.services.unit_of_work import SqlAlchemyUnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
DEFAULT_ACTIVITY_WINDOW_DAYS = 7

_ADHOC_ALPHABET = string.ascii_lowercase + string.digits

EDIT_LOCKED_MESSAGE = "This run can no longer be edited because production has already started."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_adhoc_key() -> str:
    """Return a template key for a step added directly to a run: ``adhoc_xxxxxxxx``."""
    return "adhoc_" + "".join(secrets.choice(_ADHOC_ALPHABET) for _ in range(8))


def _current_step(steps: list[ProductionRunStep]) -> ProductionRunStep | None:
    """In-progress step, else the earliest pending one."""
    for s in steps:
        if s.status == STEP_IN_PROGRESS:
            return s
    for s in steps:
        if s.status == STEP_PENDING:
            return s
    return None


def _current_step_summary(steps: list[ProductionRunStep]) -> dict | None:
    current = _current_step(steps)
    if current is None:
        return None
    return {
        "step_id": current.id,
        "step_key": current.template_key,
        "step_label": current.label,
        "step_status": current.status,
        "order": current.order,
        "assigned_to": current.assigned_to,
    }


def _product_summary(run: ProductionRun) -> dict:
    return run.product.to_summary() if run.product else {"id": run.product_id}


class ProductionRunService:
    """
    Production run engine.

    Collaborators are passed in explicitly; nothing is read from request
    globals. ``clock`` returns the current UTC time and is the only source
    of "now" for timestamps and health evaluation.
    """

    def __init__(
        self,
        *,
        templates: StepTemplateStore,
        tokens: TrackingTokenIssuer,
        audit: AuditSink,
        uow_factory: UnitOfWorkFactory = SqlAlchemyUnitOfWork,
        clock: Callable[[], datetime] = _utcnow,
        stall_hours: float = DEFAULT_STALL_THRESHOLD_HOURS,
        activity_window_days: int = DEFAULT_ACTIVITY_WINDOW_DAYS,
        tracking_base_url: str = "",
    ):
        self.templates = templates
        self.tokens = tokens
        self.audit = audit
        self.uow_factory = uow_factory
        self.clock = clock
        self.stall_hours = stall_hours
        self.activity_window_days = activity_window_days
        self.tracking_base_url = tracking_base_url

    # ── Internals ────────────────────────────────────────────────────────

    def _record(self, event: AuditEvent) -> bool:
        return record_safely(self.audit, event)

    def _health(self, run_status: str, steps) -> dict:
        return compute_run_health(
            run_status, steps, stall_threshold_hours=self.stall_hours, now=self.clock(),
        ).to_dict()

    @staticmethod
    def _load_step_and_run(uow, step_id: str) -> tuple[ProductionRunStep, ProductionRun]:
        if not step_id:
            raise ValidationError("step_id is required")
        step = uow.runs.get_step(step_id)
        if not step:
            raise NotFoundError(resource="Step", resource_id=step_id)
        run = uow.runs.lock_run(step.run_id)
        if not run:
            raise NotFoundError(resource="ProductionRun", resource_id=step.run_id)
        # Re-read under the run lock so validation sees committed state.
        uow.runs.refresh(step)
        return step, run

    @staticmethod
    def _check_assignment(step: ProductionRunStep, actor: Actor, verb: str) -> None:
        if actor.can(Capability.BYPASS_ASSIGNMENT):
            return
        if not step.assigned_to:
            raise ValidationError(f"This step must be claimed before it can be {verb}.")
        if step.assigned_to != actor.id:
            raise ForbiddenError("You are not assigned to this step.", action=verb)

    @staticmethod
    def _check_run_accepts_steps(run: ProductionRun, verb: str) -> None:
        if run.status in RUN_TERMINAL_STATUSES or run.status == RUN_BLOCKED:
            raise ValidationError(f"Cannot {verb} steps on a {run.status} run")

    @staticmethod
    def _complete_run_if_resolved(uow, run: ProductionRun, now) -> bool:
        """Move the run to COMPLETED once every step is COMPLETED or SKIPPED."""
        if uow.runs.count_unresolved(run.id) != 0:
            return False
        if run.status == RUN_PLANNED:
            # Every step skipped before any start: pass through IN_PROGRESS.
            run.status = RUN_IN_PROGRESS
            if run.started_at is None:
                run.started_at = now
        if not validate_run_transition(run.status, RUN_COMPLETED):
            return False
        run.status = RUN_COMPLETED
        run.completed_at = now
        uow.runs.flush()
        return True

    @staticmethod
    def _transition_result(step: ProductionRunStep, run: ProductionRun) -> dict:
        step_data = step.to_dict()
        run_data = run.to_dict()
        return {
            "success": True,
            "run_id": run.id,
            "step_id": step.id,
            "status": step.status,
            "run_status": run.status,
            "skip_reason": step.skip_reason,
            "timestamps": {
                "step_started_at": step_data["started_at"],
                "step_completed_at": step_data["completed_at"],
                "step_skipped_at": step_data["skipped_at"],
                "run_started_at": run_data["started_at"],
                "run_completed_at": run_data["completed_at"],
            },
        }

    # ═════════════════════════════════════════════════════════════════════
    # Run creation
    # ═════════════════════════════════════════════════════════════════════

    def create_run(self, product_id: str, quantity, actor: Actor | None = None) -> dict:
        """
        Create a PLANNED run with one PENDING step per product template and
        a tracking token, all in one transaction.

        Raises:
            NotFoundError:   product missing or inactive.
            ValidationError: bad quantity, no templates, corrupt template order.
        """
        if not product_id:
            raise ValidationError("product_id is required")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})

        product = self.templates.get_product(product_id)
        if product is None or not product.active:
            raise NotFoundError(resource="Product", resource_id=product_id)

        templates = self.templates.list_step_templates(product_id)
        if not templates:
            raise ValidationError(
                f'No production step template exists for product "{product.name}" ({product.sku}).'
            )
        validate_template_orders([t.order for t in templates], product_id)

        actor_id = actor.id if actor else None
        with self.uow_factory() as uow:
            run = ProductionRun(
                product_id=product_id,
                quantity=quantity,
                status=RUN_PLANNED,
                created_by=actor_id,
            )
            uow.runs.add(run)
            uow.runs.flush()

            for idx, tpl in enumerate(templates, start=1):
                uow.runs.add(ProductionRunStep(
                    run_id=run.id,
                    template_key=tpl.key,
                    label=tpl.label,
                    order=idx,
                    required=tpl.required,
                    status=STEP_PENDING,
                ))

            token = self.tokens.issue(uow.session, run.id, actor_id)
            run.tracking_token_id = token.id
            uow.runs.flush()

            result = {
                "run_id": run.id,
                "product": product.to_dict(),
                "quantity": run.quantity,
                "status": run.status,
                "step_count": len(templates),
                "tracking_token": {
                    "id": token.id,
                    "token": token.token,
                    "url": public_token_url(token.token, self.tracking_base_url),
                },
            }
            uow.commit()

        logger.info(
            "Production run %s created for %s x%d (%d steps)",
            result["run_id"], product.sku, quantity, len(templates),
        )
        result["audit_recorded"] = self._record(RunCreated(
            entity_id=result["run_id"],
            actor_id=actor_id,
            product_id=product.id,
            product_name=product.name,
            product_sku=product.sku,
            quantity=quantity,
            step_count=len(templates),
            token_id=token.id,
            token=token.token,
        ))
        return result

    # ═════════════════════════════════════════════════════════════════════
    # Step lifecycle
    # ═════════════════════════════════════════════════════════════════════

    def start_step(self, step_id: str, actor: Actor) -> dict:
        with self.uow_factory() as uow:
            step, run = self._load_step_and_run(uow, step_id)
            if step.status != STEP_PENDING:
                raise ValidationError(f"Step is not PENDING (current: {step.status})")
            self._check_assignment(step, actor, "started")
            self._check_run_accepts_steps(run, "start")

            active = uow.runs.find_in_progress(run.id, exclude_step_id=step.id)
            if active:
                raise ValidationError(
                    f"Only one step can be IN_PROGRESS. Step {active.order} "
                    f"({active.label}) is already in progress."
                )

            now = self.clock()
            from_status = step.status
            if run.status != RUN_IN_PROGRESS:
                run.status = RUN_IN_PROGRESS
            if run.started_at is None:
                run.started_at = now
            step.status = STEP_IN_PROGRESS
            step.started_at = now
            step.performed_by = actor.id

            uow.runs.flush()
            uow.runs.refresh(step)
            uow.runs.refresh(run)
            result = self._transition_result(step, run)
            event = StepStarted(
                entity_id=run.id, actor_id=actor.id,
                step_id=step.id, step_key=step.template_key, step_label=step.label,
                from_status=from_status, to_status=STEP_IN_PROGRESS,
            )
            uow.commit()

        logger.info("Step %s started on run %s by %s", step_id, result["run_id"], actor.id)
        result["audit_recorded"] = self._record(event)
        return result

    def stop_step(self, step_id: str, actor: Actor) -> dict:
        """Return an IN_PROGRESS step to PENDING and clear its start time."""
        with self.uow_factory() as uow:
            step, run = self._load_step_and_run(uow, step_id)
            if step.status != STEP_IN_PROGRESS:
                raise ValidationError(f"Step is not IN_PROGRESS (current: {step.status})")
            self._check_assignment(step, actor, "stopped")
            self._check_run_accepts_steps(run, "stop")

            from_status = step.status
            step.status = STEP_PENDING
            step.started_at = None
            step.performed_by = actor.id

            uow.runs.flush()
            uow.runs.refresh(step)
            uow.runs.refresh(run)
            result = self._transition_result(step, run)
            event = StepStopped(
                entity_id=run.id, actor_id=actor.id,
                step_id=step.id, step_key=step.template_key, step_label=step.label,
                from_status=from_status, to_status=STEP_PENDING,
            )
            uow.commit()

        logger.info("Step %s stopped on run %s by %s", step_id, result["run_id"], actor.id)
        result["audit_recorded"] = self._record(event)
        return result

    def complete_step(self, step_id: str, actor: Actor) -> dict:
        """Complete an IN_PROGRESS step; completes the run when nothing is left open."""
        with self.uow_factory() as uow:
            step, run = self._load_step_and_run(uow, step_id)
            if step.status != STEP_IN_PROGRESS:
                raise ValidationError(f"Step is not IN_PROGRESS (current: {step.status})")
            self._check_assignment(step, actor, "completed")
            self._check_run_accepts_steps(run, "complete")

            now = self.clock()
            from_status = step.status
            step.status = STEP_COMPLETED
            step.completed_at = now
            step.performed_by = actor.id
            uow.runs.flush()

            run_completed = self._complete_run_if_resolved(uow, run, now)

            uow.runs.refresh(step)
            uow.runs.refresh(run)
            result = self._transition_result(step, run)
            result["run_completed"] = run_completed
            event = StepCompleted(
                entity_id=run.id, actor_id=actor.id,
                step_id=step.id, step_key=step.template_key, step_label=step.label,
                from_status=from_status, to_status=STEP_COMPLETED,
                run_completed=run_completed,
            )
            uow.commit()

        logger.info(
            "Step %s completed on run %s by %s%s",
            step_id, result["run_id"], actor.id, " (run completed)" if run_completed else "",
        )
        result["audit_recorded"] = self._record(event)
        return result

    def skip_step(self, step_id: str, reason: str | None, actor: Actor) -> dict:
        """
        Skip any step that is not COMPLETED. Required steps need a reason.
        Skipping the last unresolved step completes the run.
        """
        trimmed = (reason or "").strip()
        with self.uow_factory() as uow:
            step, run = self._load_step_and_run(uow, step_id)
            if not validate_step_transition(step.status, STEP_SKIPPED):
                raise ValidationError(f"Cannot skip a {step.status} step")
            self._check_assignment(step, actor, "skipped")
            if step.required and not trimmed:
                raise ValidationError("Skipping a required step requires a reason")
            self._check_run_accepts_steps(run, "skip")

            now = self.clock()
            from_status = step.status
            step.status = STEP_SKIPPED
            step.skipped_at = now
            step.skip_reason = trimmed or None
            step.performed_by = actor.id
            uow.runs.flush()

            run_completed = self._complete_run_if_resolved(uow, run, now)

            uow.runs.refresh(step)
            uow.runs.refresh(run)
            result = self._transition_result(step, run)
            result["run_completed"] = run_completed
            event = StepSkipped(
                entity_id=run.id, actor_id=actor.id,
                step_id=step.id, step_key=step.template_key, step_label=step.label,
                from_status=from_status, to_status=STEP_SKIPPED,
                skip_reason=trimmed or None, run_completed=run_completed,
            )
            uow.commit()

        logger.info(
            "Step %s skipped on run %s by %s%s",
            step_id, result["run_id"], actor.id, " (run completed)" if run_completed else "",
        )
        result["audit_recorded"] = self._record(event)
        return result

    # ═════════════════════════════════════════════════════════════════════
    # Pre-start structural editing
    # ═════════════════════════════════════════════════════════════════════

    @staticmethod
    def _assert_editable(uow, run_id: str) -> tuple[ProductionRun, list[ProductionRunStep]]:
        """Lock the run and confirm it is PLANNED with every step PENDING."""
        run = uow.runs.lock_run(run_id)
        if not run:
            raise NotFoundError(resource="ProductionRun", resource_id=run_id)
        steps = uow.runs.list_steps(run_id)
        if run.status != RUN_PLANNED or any(s.status != STEP_PENDING for s in steps):
            raise ValidationError(EDIT_LOCKED_MESSAGE, details={"run_status": run.status})
        return run, steps

    @staticmethod
    def _edit_result(uow, run: ProductionRun) -> tuple[dict, tuple[dict, ...]]:
        """Re-read the step list after an edit; returns (response, snapshot)."""
        after = tuple(s.snapshot() for s in uow.runs.list_steps(run.id))
        return {"run_id": run.id, "status": run.status, "steps": list(after)}, after

    def add_adhoc_step(self, run_id: str, label: str, actor: Actor, *, required: bool = True) -> dict:
        clean = (label or "").strip()
        if not run_id:
            raise ValidationError("run_id is required")
        if not clean:
            raise ValidationError("label is required")

        with self.uow_factory() as uow:
            run, steps = self._assert_editable(uow, run_id)
            before = tuple(s.snapshot() for s in steps)

            existing_keys = {s.template_key for s in steps}
            key = generate_adhoc_key()
            while key in existing_keys:
                key = generate_adhoc_key()

            step = ProductionRunStep(
                run_id=run.id,
                template_key=key,
                label=clean,
                order=uow.runs.max_order(run.id) + 1,
                required=bool(required),
                status=STEP_PENDING,
            )
            uow.runs.add(step)
            uow.runs.flush()

            result, after = self._edit_result(uow, run)
            result["step"] = step.to_dict()
            event = RunStepsModified(
                entity_id=run.id, actor_id=actor.id,
                operation="add",
                description=f'Added step "{clean}" to production run',
                step_id=step.id,
                steps_before=before, steps_after=after,
            )
            uow.commit()

        logger.info("Ad-hoc step %s added to run %s", result["step"]["id"], run_id)
        result["audit_recorded"] = self._record(event)
        return result

    def update_step_override(
        self,
        step_id: str,
        actor: Actor,
        *,
        label: str | None = None,
        required: bool | None = None,
    ) -> dict:
        if label is None and required is None:
            raise ValidationError("Provide label and/or required to update")

        with self.uow_factory() as uow:
            step = uow.runs.get_step(step_id) if step_id else None
            if not step:
                raise NotFoundError(resource="Step", resource_id=step_id)
            run, steps = self._assert_editable(uow, step.run_id)
            before = tuple(s.snapshot() for s in steps)

            if label is not None:
                clean = label.strip()
                if not clean:
                    raise ValidationError("label cannot be empty")
                step.label = clean
            if required is not None:
                step.required = bool(required)
            uow.runs.flush()

            result, after = self._edit_result(uow, run)
            result["step"] = step.to_dict()
            event = RunStepsModified(
                entity_id=run.id, actor_id=actor.id,
                operation="update",
                description="Updated production run step",
                step_id=step.id,
                steps_before=before, steps_after=after,
            )
            uow.commit()

        result["audit_recorded"] = self._record(event)
        return result

    def delete_step(self, step_id: str, actor: Actor) -> dict:
        """Remove a PENDING step and renumber the rest 1..N."""
        with self.uow_factory() as uow:
            step = uow.runs.get_step(step_id) if step_id else None
            if not step:
                raise NotFoundError(resource="Step", resource_id=step_id)
            if step.status != STEP_PENDING:
                raise ValidationError("Cannot remove a step that has started")
            run, steps = self._assert_editable(uow, step.run_id)
            if len(steps) == 1:
                raise ValidationError("Cannot remove the only step of a production run")
            before = tuple(s.snapshot() for s in steps)
            removed_label = step.label

            uow.runs.delete(step)
            uow.runs.flush()
            for idx, remaining in enumerate(uow.runs.list_steps(run.id), start=1):
                if remaining.order != idx:
                    remaining.order = idx
            uow.runs.flush()

            result, after = self._edit_result(uow, run)
            result["deleted_step_id"] = step_id
            event = RunStepsModified(
                entity_id=run.id, actor_id=actor.id,
                operation="delete",
                description=f'Removed step "{removed_label}" from production run',
                step_id=step_id,
                steps_before=before, steps_after=after,
            )
            uow.commit()

        logger.info("Step %s removed from run %s", step_id, result["run_id"])
        result["audit_recorded"] = self._record(event)
        return result

    def reorder_steps(self, run_id: str, ordered_step_ids: list[str], actor: Actor) -> dict:
        """Apply an exact permutation of the run's step ids; order = index + 1."""
        if not run_id:
            raise ValidationError("run_id is required")
        if not isinstance(ordered_step_ids, list) or not ordered_step_ids:
            raise ValidationError("ordered_step_ids is required")
        if len(set(ordered_step_ids)) != len(ordered_step_ids):
            raise ValidationError("ordered_step_ids contains duplicates")

        with self.uow_factory() as uow:
            run, steps = self._assert_editable(uow, run_id)
            by_id = {s.id: s for s in steps}
            if len(ordered_step_ids) != len(steps) or any(sid not in by_id for sid in ordered_step_ids):
                raise ValidationError(
                    "ordered_step_ids must include all run steps",
                    details={"expected": sorted(by_id), "received": ordered_step_ids},
                )
            before = tuple(s.snapshot() for s in steps)

            for idx, sid in enumerate(ordered_step_ids, start=1):
                by_id[sid].order = idx
            uow.runs.flush()

            result, after = self._edit_result(uow, run)
            event = RunStepsModified(
                entity_id=run.id, actor_id=actor.id,
                operation="reorder",
                description="Reordered production run steps",
                steps_before=before, steps_after=after,
            )
            uow.commit()

        result["audit_recorded"] = self._record(event)
        return result

    # ═════════════════════════════════════════════════════════════════════
    # Assignment
    # ═════════════════════════════════════════════════════════════════════

    def claim_step(self, step_id: str, actor: Actor) -> dict:
        """Assign a step to the acting user. No status precondition."""
        if not actor or not actor.id:
            raise ValidationError("user id is required")

        with self.uow_factory() as uow:
            step, run = self._load_step_and_run(uow, step_id)
            previous = step.assigned_to
            if previous and previous != actor.id and not actor.can(Capability.BYPASS_ASSIGNMENT):
                raise ForbiddenError("This step is already assigned to another user.", action="claim")

            step.assigned_to = actor.id
            uow.runs.flush()
            result = {
                "success": True,
                "run_id": run.id,
                "step_id": step.id,
                "assigned_to": step.assigned_to,
            }
            event = StepClaimed(
                entity_id=run.id, actor_id=actor.id,
                step_id=step.id, step_label=step.label,
                previous_assignee=previous, assignee=actor.id,
            )
            uow.commit()

        result["audit_recorded"] = self._record(event)
        return result

    def admin_assign_step(self, step_id: str, assignee: str | None, actor: Actor) -> dict:
        """Set or clear (``assignee=None``) the step assignee. Admin only."""
        if not actor.can(Capability.ASSIGN_STEPS):
            raise ForbiddenError("Admin only", action="assign")
        target = (assignee or "").strip() or None

        with self.uow_factory() as uow:
            step, run = self._load_step_and_run(uow, step_id)
            previous = step.assigned_to
            step.assigned_to = target
            uow.runs.flush()
            result = {
                "success": True,
                "run_id": run.id,
                "step_id": step.id,
                "assigned_to": step.assigned_to,
            }
            event = StepReassigned(
                entity_id=run.id, actor_id=actor.id,
                step_id=step.id, step_label=step.label,
                previous_assignee=previous, assignee=target,
            )
            uow.commit()

        logger.info("Step %s reassigned %s → %s by %s", step_id, previous, target, actor.id)
        result["audit_recorded"] = self._record(event)
        return result

    def my_assigned_steps(self, actor: Actor) -> list[dict]:
        """Open steps assigned to ``actor`` on runs that are not finished."""
        stmt = (
            select(ProductionRunStep, ProductionRun)
            .join(ProductionRun, ProductionRunStep.run_id == ProductionRun.id)
            .where(
                ProductionRunStep.assigned_to == actor.id,
                ProductionRunStep.status.in_(STEP_OPEN_STATUSES),
                ProductionRun.status.not_in(RUN_TERMINAL_STATUSES),
            )
            .order_by(ProductionRunStep.status.desc(), ProductionRunStep.order.asc())
        )
        out = []
        for step, run in db.session.execute(stmt).all():
            step_data = step.to_dict()
            out.append({
                "step_id": step.id,
                "step_label": step.label,
                "step_key": step.template_key,
                "step_status": step.status,
                "order": step.order,
                "required": step.required,
                "started_at": step_data["started_at"],
                "run": {
                    "id": run.id,
                    "status": run.status,
                    "quantity": run.quantity,
                    "product": _product_summary(run),
                },
            })
        return out

    def my_active_runs(self, actor: Actor) -> list[dict]:
        """
        Unfinished runs where ``actor`` acted on a step inside the activity
        window, or holds a step that is in progress. Most recent first.
        """
        cutoff = self.clock() - timedelta(days=self.activity_window_days)
        S = ProductionRunStep
        touched = select(S.run_id).where(
            or_(
                and_(
                    S.performed_by == actor.id,
                    or_(
                        S.status == STEP_IN_PROGRESS,
                        S.started_at >= cutoff,
                        S.completed_at >= cutoff,
                        S.skipped_at >= cutoff,
                    ),
                ),
                and_(S.assigned_to == actor.id, S.status == STEP_IN_PROGRESS),
            )
        )
        runs = db.session.execute(
            select(ProductionRun).where(
                ProductionRun.status.not_in(RUN_TERMINAL_STATUSES),
                ProductionRun.id.in_(touched),
            )
        ).unique().scalars().all()

        out = []
        for run in runs:
            steps = sorted(run.steps, key=lambda s: s.order)
            last_action = None
            for s in steps:
                if s.performed_by != actor.id:
                    continue
                t = as_utc(s.skipped_at or s.completed_at or s.started_at)
                if t and (last_action is None or t > last_action):
                    last_action = t
            last_action = last_action or as_utc(run.created_at)
            product = _product_summary(run)
            out.append({
                "run_id": run.id,
                "product_id": run.product_id,
                "product_name": product.get("name"),
                "product_sku": product.get("sku"),
                "quantity": run.quantity,
                "run_status": run.status,
                "current_step": _current_step_summary(steps),
                "last_action_at": last_action,
            })

        out.sort(key=lambda r: r["last_action_at"], reverse=True)
        for row in out:
            row["last_action_at"] = row["last_action_at"].isoformat()
        return out

    # ═════════════════════════════════════════════════════════════════════
    # Run control
    # ═════════════════════════════════════════════════════════════════════

    @staticmethod
    def _require_run_manager(actor: Actor, verb: str) -> None:
        if not actor.can(Capability.MANAGE_RUNS):
            raise ForbiddenError(f"You do not have permission to {verb} production runs.", action=verb)

    def _change_run_status(
        self, run_id: str, actor: Actor, to_status: str | None, reason: str | None, verb: str,
    ) -> tuple[dict, str, str]:
        """Move a run along the status graph. ``to_status=None`` resolves an unblock target."""
        with self.uow_factory() as uow:
            run = uow.runs.lock_run(run_id) if run_id else None
            if not run:
                raise NotFoundError(resource="ProductionRun", resource_id=run_id)
            from_status = run.status
            if to_status is None:
                if from_status != RUN_BLOCKED:
                    raise ValidationError(f"Run is not BLOCKED (current: {from_status})")
                to_status = RUN_IN_PROGRESS if run.started_at else RUN_PLANNED
            if not validate_run_transition(from_status, to_status):
                raise ValidationError(f"Cannot {verb} a {from_status} run")

            run.status = to_status
            run.status_reason = reason
            if to_status == RUN_CANCELLED:
                run.cancelled_at = self.clock()
            uow.runs.flush()
            uow.runs.refresh(run)
            result = {"success": True, **run.to_dict()}
            uow.commit()

        logger.info("Run %s %s → %s by %s", run_id, from_status, to_status, actor.id)
        return result, from_status, to_status

    def cancel_run(self, run_id: str, actor: Actor, reason: str | None) -> dict:
        self._require_run_manager(actor, "cancel")
        trimmed = (reason or "").strip()
        if not trimmed:
            raise ValidationError("Cancelling a production run requires a reason")
        result, from_status, _ = self._change_run_status(run_id, actor, RUN_CANCELLED, trimmed, "cancel")
        result["audit_recorded"] = self._record(RunCancelled(
            entity_id=run_id, actor_id=actor.id,
            from_status=from_status, to_status=RUN_CANCELLED, reason=trimmed,
        ))
        return result

    def block_run(self, run_id: str, actor: Actor, reason: str | None) -> dict:
        self._require_run_manager(actor, "block")
        trimmed = (reason or "").strip()
        if not trimmed:
            raise ValidationError("Blocking a production run requires a reason")
        result, from_status, _ = self._change_run_status(run_id, actor, RUN_BLOCKED, trimmed, "block")
        result["audit_recorded"] = self._record(RunBlocked(
            entity_id=run_id, actor_id=actor.id,
            from_status=from_status, to_status=RUN_BLOCKED, reason=trimmed,
        ))
        return result

    def unblock_run(self, run_id: str, actor: Actor, reason: str | None = None) -> dict:
        """Return a BLOCKED run to IN_PROGRESS if it ever started, else PLANNED."""
        self._require_run_manager(actor, "unblock")
        trimmed = (reason or "").strip() or None
        result, from_status, to_status = self._change_run_status(run_id, actor, None, None, "unblock")
        result["audit_recorded"] = self._record(RunUnblocked(
            entity_id=run_id, actor_id=actor.id,
            from_status=from_status, to_status=to_status, reason=trimmed,
        ))
        return result

    # ═════════════════════════════════════════════════════════════════════
    # Read side
    # ═════════════════════════════════════════════════════════════════════

    def _run_detail(self, run: ProductionRun) -> dict:
        steps = sorted(run.steps, key=lambda s: s.order)
        token = run.tracking_token
        return {
            **run.to_dict(),
            "product": _product_summary(run),
            "tracking_token": {
                "id": token.id,
                "token": token.token,
                "status": token.status,
                "url": public_token_url(token.token, self.tracking_base_url),
            } if token else None,
            "steps": [s.to_dict() for s in steps],
            "current_step": _current_step_summary(steps),
            "health": self._health(run.status, steps),
        }

    def get_run(self, run_id: str) -> dict:
        if not run_id:
            raise ValidationError("run_id is required")
        run = db.session.get(ProductionRun, run_id)
        if not run:
            raise NotFoundError(resource="ProductionRun", resource_id=run_id)
        return self._run_detail(run)

    def list_runs(self, status: str | None = None, limit=DEFAULT_LIST_LIMIT) -> list[dict]:
        """Newest runs first, each with its current step and health."""
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("limit must be an integer", details={"limit": limit}) from None
        limit = max(1, min(MAX_LIST_LIMIT, limit))

        stmt = select(ProductionRun)
        if status:
            status = status.upper()
            if status not in RUN_STATUSES:
                raise ValidationError(
                    f"Unknown run status: {status}", details={"allowed": sorted(RUN_STATUSES)},
                )
            stmt = stmt.where(ProductionRun.status == status)
        stmt = stmt.order_by(ProductionRun.created_at.desc()).limit(limit)

        out = []
        for run in db.session.execute(stmt).unique().scalars():
            steps = sorted(run.steps, key=lambda s: s.order)
            out.append({
                **run.to_dict(),
                "product": _product_summary(run),
                "step_count": len(steps),
                "current_step": _current_step_summary(steps),
                "health": self._health(run.status, steps),
            })
        return out

    def runs_needing_attention(self) -> list[dict]:
        """Unfinished runs that are BLOCKED or have any health flag raised."""
        stmt = (
            select(ProductionRun)
            .where(ProductionRun.status.not_in(RUN_TERMINAL_STATUSES))
            .order_by(ProductionRun.created_at.asc())
        )
        out = []
        for run in db.session.execute(stmt).unique().scalars():
            steps = sorted(run.steps, key=lambda s: s.order)
            health = self._health(run.status, steps)
            if run.status == RUN_BLOCKED or any(health.values()):
                out.append({
                    **run.to_dict(),
                    "product": _product_summary(run),
                    "current_step": _current_step_summary(steps),
                    "health": health,
                })
        return out

    def list_run_activity(self, run_id: str, since: datetime | None = None, limit: int = 200) -> list[dict]:
        if not db.session.get(ProductionRun, run_id):
            raise NotFoundError(resource="ProductionRun", resource_id=run_id)
        return [row.to_dict() for row in query_activity("production_run", run_id, since=since, limit=limit)]


# ── Factory ──────────────────────────────────────────────────────────────────


def get_production_run_service() -> ProductionRunService:
    """Build the engine wired to the database-backed collaborators and app config."""
    cfg = current_app.config
    return ProductionRunService(
        templates=SqlStepTemplateStore(),
        tokens=DatabaseTokenIssuer(),
        audit=DatabaseAuditSink(),
        uow_factory=SqlAlchemyUnitOfWork,
        stall_hours=cfg.get("PRODUCTION_STALL_HOURS", DEFAULT_STALL_THRESHOLD_HOURS),
        activity_window_days=cfg.get("PRODUCTION_ACTIVITY_WINDOW_DAYS", DEFAULT_ACTIVITY_WINDOW_DAYS),
        tracking_base_url=cfg.get("TRACKING_BASE_URL", ""),
    )
