"""
Typed activity-log payloads — one frozen dataclass per audit action.

Each event fixes its ``entity_type``, ``action`` and ``tags`` and renders the
human summary plus ``before`` / ``after`` / ``details`` payloads. Sinks only
ever see these objects, never free-form dicts.

Usage:
    from psillyops.services.audit_events import StepStarted

    audit.record(StepStarted(
        entity_id=run.id, actor_id=actor.id,
        step_id=step.id, step_key=step.template_key, step_label=step.label,
        from_status="PENDING", to_status="IN_PROGRESS",
    ))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(frozen=True)
class AuditEvent:
    """Base class. Subclasses set the ClassVars and override the renderers."""
    entity_type: ClassVar[str] = "production_run"
    action: ClassVar[str] = ""
    tags: ClassVar[tuple[str, ...]] = ()

    entity_id: str
    actor_id: str | None

    def summary(self) -> str:
        return self.action

    def before(self) -> dict | None:
        return None

    def after(self) -> dict | None:
        return None

    def details(self) -> dict:
        return {}


# ═════════════════════════════════════════════════════════════════════════════
# Run lifecycle
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RunCreated(AuditEvent):
    action: ClassVar[str] = "production_run_created"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "create")

    product_id: str = ""
    product_name: str = ""
    product_sku: str = ""
    quantity: int = 0
    step_count: int = 0
    token_id: str = ""
    token: str = ""

    def summary(self) -> str:
        return (
            f"Production run created: {self.product_name} × {self.quantity} "
            f"({self.step_count} steps)"
        )

    def details(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "quantity": self.quantity,
            "step_count": self.step_count,
            "tracking_token_id": self.token_id,
            "tracking_token": self.token,
        }


@dataclass(frozen=True)
class _RunStatusChange(AuditEvent):
    from_status: str = ""
    to_status: str = ""
    reason: str | None = None

    def before(self) -> dict | None:
        return {"status": self.from_status}

    def after(self) -> dict | None:
        return {"status": self.to_status}

    def details(self) -> dict:
        return {"from_status": self.from_status, "to_status": self.to_status, "reason": self.reason}


@dataclass(frozen=True)
class RunCancelled(_RunStatusChange):
    action: ClassVar[str] = "production_run_cancelled"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "cancel")

    def summary(self) -> str:
        return f"Production run cancelled — {self.reason}"


@dataclass(frozen=True)
class RunBlocked(_RunStatusChange):
    action: ClassVar[str] = "production_run_blocked"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "block")

    def summary(self) -> str:
        return f"Production run blocked — {self.reason}"


@dataclass(frozen=True)
class RunUnblocked(_RunStatusChange):
    action: ClassVar[str] = "production_run_unblocked"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "unblock")

    def summary(self) -> str:
        return f"Production run unblocked ({self.to_status})"


# ═════════════════════════════════════════════════════════════════════════════
# Step transitions
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class _StepTransition(AuditEvent):
    verb: ClassVar[str] = ""

    step_id: str = ""
    step_key: str = ""
    step_label: str = ""
    from_status: str = ""
    to_status: str = ""

    def summary(self) -> str:
        return f"Production step {self.verb}: {self.step_label}"

    def before(self) -> dict | None:
        return {"status": self.from_status}

    def after(self) -> dict | None:
        return {"status": self.to_status}

    def details(self) -> dict:
        return {
            "step_id": self.step_id,
            "step_key": self.step_key,
            "step_label": self.step_label,
            "from_status": self.from_status,
            "to_status": self.to_status,
        }


@dataclass(frozen=True)
class StepStarted(_StepTransition):
    action: ClassVar[str] = "production_step_started"
    tags: ClassVar[tuple[str, ...]] = ("production", "step", "start")
    verb: ClassVar[str] = "started"


@dataclass(frozen=True)
class StepStopped(_StepTransition):
    action: ClassVar[str] = "production_step_stopped"
    tags: ClassVar[tuple[str, ...]] = ("production", "step", "stop")
    verb: ClassVar[str] = "stopped"


@dataclass(frozen=True)
class StepCompleted(_StepTransition):
    action: ClassVar[str] = "production_step_completed"
    tags: ClassVar[tuple[str, ...]] = ("production", "step", "complete")
    verb: ClassVar[str] = "completed"

    run_completed: bool = False

    def summary(self) -> str:
        base = super().summary()
        return f"{base} (run completed)" if self.run_completed else base

    def details(self) -> dict:
        return {**super().details(), "run_completed": self.run_completed}


@dataclass(frozen=True)
class StepSkipped(_StepTransition):
    action: ClassVar[str] = "production_step_skipped"
    tags: ClassVar[tuple[str, ...]] = ("production", "step", "skip")
    verb: ClassVar[str] = "skipped"

    skip_reason: str | None = None
    run_completed: bool = False

    def summary(self) -> str:
        base = super().summary()
        if self.skip_reason:
            base = f"{base} — {self.skip_reason}"
        return f"{base} (run completed)" if self.run_completed else base

    def details(self) -> dict:
        return {
            **super().details(),
            "skip_reason": self.skip_reason,
            "run_completed": self.run_completed,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Structural edits
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RunStepsModified(AuditEvent):
    """Pre-start edit. Carries the whole step list before and after."""
    action: ClassVar[str] = "production_run_steps_modified"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "edit")

    operation: str = ""            # add | update | delete | reorder
    description: str = ""
    step_id: str | None = None
    steps_before: tuple[dict, ...] = field(default_factory=tuple)
    steps_after: tuple[dict, ...] = field(default_factory=tuple)

    def summary(self) -> str:
        return self.description

    def before(self) -> dict | None:
        return {"steps": list(self.steps_before)}

    def after(self) -> dict | None:
        return {"steps": list(self.steps_after)}

    def details(self) -> dict:
        payload = {"operation": self.operation}
        if self.step_id:
            payload["step_id"] = self.step_id
        return payload


# ═════════════════════════════════════════════════════════════════════════════
# Assignment
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StepClaimed(AuditEvent):
    action: ClassVar[str] = "production_step_assigned"
    tags: ClassVar[tuple[str, ...]] = ("production", "step", "assign")

    step_id: str = ""
    step_label: str = ""
    previous_assignee: str | None = None
    assignee: str | None = None

    def summary(self) -> str:
        return f"Step claimed: {self.step_label}"

    def before(self) -> dict | None:
        return {"assigned_to": self.previous_assignee}

    def after(self) -> dict | None:
        return {"assigned_to": self.assignee}

    def details(self) -> dict:
        return {"step_id": self.step_id, "assigned_to": self.assignee}


@dataclass(frozen=True)
class StepReassigned(StepClaimed):
    action: ClassVar[str] = "production_step_reassigned"

    def summary(self) -> str:
        target = self.assignee or "nobody"
        return f"Step reassigned: {self.step_label} → {target}"


# ═════════════════════════════════════════════════════════════════════════════
# Product step templates
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class _TemplateEvent(AuditEvent):
    entity_type: ClassVar[str] = "product"

    template_id: str = ""
    template_key: str = ""
    template_label: str = ""


@dataclass(frozen=True)
class StepTemplateCreated(_TemplateEvent):
    action: ClassVar[str] = "production_step_template_created"
    tags: ClassVar[tuple[str, ...]] = ("production", "template", "create")

    order: int = 0
    required: bool = True

    def summary(self) -> str:
        return f'Created production step template "{self.template_label}"'

    def details(self) -> dict:
        return {
            "template_id": self.template_id,
            "key": self.template_key,
            "label": self.template_label,
            "order": self.order,
            "required": self.required,
        }


@dataclass(frozen=True)
class StepTemplateUpdated(_TemplateEvent):
    action: ClassVar[str] = "production_step_template_updated"
    tags: ClassVar[tuple[str, ...]] = ("production", "template", "update")

    old_values: dict = field(default_factory=dict)
    new_values: dict = field(default_factory=dict)

    def summary(self) -> str:
        return f'Updated production step template "{self.template_label}"'

    def before(self) -> dict | None:
        return dict(self.old_values)

    def after(self) -> dict | None:
        return dict(self.new_values)

    def details(self) -> dict:
        return {"template_id": self.template_id, "key": self.template_key}


@dataclass(frozen=True)
class StepTemplatesReordered(AuditEvent):
    entity_type: ClassVar[str] = "product"
    action: ClassVar[str] = "production_step_template_reordered"
    tags: ClassVar[tuple[str, ...]] = ("production", "template", "reorder")

    templates_before: tuple[dict, ...] = field(default_factory=tuple)
    templates_after: tuple[dict, ...] = field(default_factory=tuple)

    def summary(self) -> str:
        return "Reordered production step templates"

    def before(self) -> dict | None:
        return {"templates": list(self.templates_before)}

    def after(self) -> dict | None:
        return {"templates": list(self.templates_after)}


@dataclass(frozen=True)
class StepTemplateDeleted(_TemplateEvent):
    action: ClassVar[str] = "production_step_template_deleted"
    tags: ClassVar[tuple[str, ...]] = ("production", "template", "delete")

    order: int = 0

    def summary(self) -> str:
        return f'Deleted production step template "{self.template_label}"'

    def details(self) -> dict:
        return {
            "template_id": self.template_id,
            "key": self.template_key,
            "label": self.template_label,
            "order": self.order,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Edit proposals
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RunEditProposed(AuditEvent):
    action: ClassVar[str] = "production_run_edit_proposed"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "proposal")

    proposal_id: str = ""
    input_text: str = ""
    operations: tuple[dict, ...] = field(default_factory=tuple)

    def summary(self) -> str:
        return f"Run edit proposed ({len(self.operations)} operation(s))"

    def details(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "input_text": self.input_text,
            "operations": list(self.operations),
        }


@dataclass(frozen=True)
class RunEditConfirmed(AuditEvent):
    action: ClassVar[str] = "production_run_edit_confirmed"
    tags: ClassVar[tuple[str, ...]] = ("production", "run", "proposal", "execute")

    proposal_id: str = ""
    status: str = ""
    applied: int = 0
    error: str | None = None

    def summary(self) -> str:
        if self.error:
            return f"Run edit proposal failed after {self.applied} operation(s): {self.error}"
        return f"Run edit proposal confirmed ({self.applied} operation(s) applied)"

    def details(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "status": self.status,
            "applied": self.applied,
            "error": self.error,
        }
