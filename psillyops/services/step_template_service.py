"""
Production Step Templates — Service Layer.

Product-level default steps that every new production run copies.

Business logic for:
    - Template store read side used by run creation (product + ordered templates)
    - Order integrity: integer, unique, gap-free order values
    - Template maintenance: create / update / reorder / delete with audit

Usage:
    from psillyops.services.step_template_service import SqlStepTemplateStore

    store = SqlStepTemplateStore()
    product = store.get_product(product_id)
    templates = store.list_step_templates(product_id)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol, Sequence

from sqlalchemy import select

from psillyops.core.actor import Actor, Capability
from psillyops.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from psillyops.models import db
from psillyops.models.product import Product, ProductionStepTemplate
from psillyops.models.production import RUN_ACTIVE_STATUSES, ProductionRun, ProductionRunStep
from psillyops.services.audit_events import (
    StepTemplateCreated,
    StepTemplateDeleted,
    StepTemplatesReordered,
    StepTemplateUpdated,
)
from psillyops.services.audit_sink import AuditSink, DatabaseAuditSink, record_safely

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_]+$")


# ── Read side (consumed by run creation) ─────────────────────────────────────


@dataclass(frozen=True)
class ProductSummary:
    id: str
    name: str
    sku: str
    active: bool

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "sku": self.sku}


@dataclass(frozen=True)
class StepTemplateSpec:
    key: str
    label: str
    order: int
    required: bool


class StepTemplateStore(Protocol):
    def get_product(self, product_id: str) -> ProductSummary | None:
        ...

    def list_step_templates(self, product_id: str) -> list[StepTemplateSpec]:
        ...


class SqlStepTemplateStore:
    """Template store backed by the ``production_step_templates`` table."""

    def get_product(self, product_id: str) -> ProductSummary | None:
        product = db.session.get(Product, product_id)
        if product is None:
            return None
        return ProductSummary(id=product.id, name=product.name, sku=product.sku, active=product.active)

    def list_step_templates(self, product_id: str) -> list[StepTemplateSpec]:
        rows = _templates_for(product_id)
        return [StepTemplateSpec(key=t.key, label=t.label, order=t.order, required=t.required) for t in rows]


def validate_template_orders(orders: Sequence, product_id: str) -> None:
    """Raise ValidationError unless ``orders`` are integers, unique and gap-free.

    The sequence is checked as given: each value must equal the first value
    plus its position.
    """
    all_int = all(isinstance(o, int) and not isinstance(o, bool) for o in orders)
    unique = len(set(orders)) == len(orders)
    gap_free = all_int and all(o == orders[0] + i for i, o in enumerate(orders))
    if not (all_int and unique and gap_free):
        raise ValidationError(
            f"Invalid step template ordering for product {product_id}. "
            "Duplicate or missing order values.",
            details={"orders": list(orders)},
        )


# ── Template maintenance ─────────────────────────────────────────────────────


def _templates_for(product_id: str) -> list[ProductionStepTemplate]:
    stmt = (
        select(ProductionStepTemplate)
        .where(ProductionStepTemplate.product_id == product_id)
        .order_by(ProductionStepTemplate.order.asc())
    )
    return list(db.session.execute(stmt).scalars())


def _require_manager(actor: Actor) -> None:
    if not actor.can(Capability.MANAGE_TEMPLATES):
        raise ForbiddenError("You do not have permission to edit step templates.", action="manage_templates")


def _require_product(product_id: str) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(resource="Product", resource_id=product_id)
    return product


def _require_template(product_id: str, template_id: str) -> ProductionStepTemplate:
    template = db.session.get(ProductionStepTemplate, template_id)
    if not template or template.product_id != product_id:
        raise NotFoundError(resource="StepTemplate", resource_id=template_id)
    return template


def list_step_templates(product_id: str) -> list[dict]:
    _require_product(product_id)
    return [t.to_dict() for t in _templates_for(product_id)]


def create_step_template(
    product_id: str,
    key: str,
    label: str,
    actor: Actor,
    *,
    required: bool = True,
    audit: AuditSink | None = None,
) -> dict:
    """Append a new template at the end of the product's step list."""
    _require_manager(actor)
    clean_key = (key or "").strip()
    clean_label = (label or "").strip()
    if not clean_key:
        raise ValidationError("key is required")
    if not _KEY_RE.match(clean_key):
        raise ValidationError("key must be letters/numbers/underscore only", details={"key": clean_key})
    if not clean_label:
        raise ValidationError("label is required")

    product = _require_product(product_id)
    existing = _templates_for(product_id)
    if any(t.key == clean_key for t in existing):
        raise ValidationError(f'Step template key "{clean_key}" already exists for this product')

    orders = [t.order for t in existing]
    if orders:
        validate_template_orders(orders, product_id)
    next_order = max(orders) + 1 if orders else 1

    template = ProductionStepTemplate(
        product_id=product_id,
        key=clean_key,
        label=clean_label,
        order=next_order,
        required=bool(required),
    )
    db.session.add(template)
    db.session.commit()
    logger.info("Step template %s created for product %s at order %d", clean_key, product.sku, next_order)

    record_safely(audit or DatabaseAuditSink(), StepTemplateCreated(
        entity_id=product_id,
        actor_id=actor.id,
        template_id=template.id,
        template_key=template.key,
        template_label=template.label,
        order=template.order,
        required=template.required,
    ))
    return template.to_dict()


def update_step_template(
    product_id: str,
    template_id: str,
    actor: Actor,
    *,
    label: str | None = None,
    required: bool | None = None,
    audit: AuditSink | None = None,
) -> dict:
    _require_manager(actor)
    template = _require_template(product_id, template_id)
    old = {"label": template.label, "required": template.required}

    if label is not None:
        clean = label.strip()
        if not clean:
            raise ValidationError("label cannot be empty")
        template.label = clean
    if required is not None:
        template.required = bool(required)

    db.session.commit()

    record_safely(audit or DatabaseAuditSink(), StepTemplateUpdated(
        entity_id=product_id,
        actor_id=actor.id,
        template_id=template.id,
        template_key=template.key,
        template_label=template.label,
        old_values=old,
        new_values={"label": template.label, "required": template.required},
    ))
    return template.to_dict()


def reorder_step_templates(
    product_id: str,
    ordered_ids: list[str],
    actor: Actor,
    *,
    audit: AuditSink | None = None,
) -> list[dict]:
    """Rewrite template orders to follow ``ordered_ids`` (an exact permutation)."""
    _require_manager(actor)
    _require_product(product_id)
    if not isinstance(ordered_ids, list) or not ordered_ids:
        raise ValidationError("ordered_template_ids is required")
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ValidationError("ordered_template_ids contains duplicates")

    templates = _templates_for(product_id)
    by_id = {t.id: t for t in templates}
    if len(ordered_ids) != len(templates):
        raise ValidationError("ordered_template_ids must include all step templates for this product")
    unknown = [tid for tid in ordered_ids if tid not in by_id]
    if unknown:
        raise ValidationError(
            "ordered_template_ids contains invalid template id for this product",
            details={"unknown": unknown},
        )

    before = tuple({"id": t.id, "key": t.key, "order": t.order} for t in templates)
    for idx, tid in enumerate(ordered_ids, start=1):
        by_id[tid].order = idx
    db.session.commit()

    after = tuple({"id": tid, "key": by_id[tid].key, "order": idx} for idx, tid in enumerate(ordered_ids, start=1))
    record_safely(audit or DatabaseAuditSink(), StepTemplatesReordered(
        entity_id=product_id,
        actor_id=actor.id,
        templates_before=before,
        templates_after=after,
    ))
    return [t.to_dict() for t in _templates_for(product_id)]


def delete_step_template(
    product_id: str,
    template_id: str,
    actor: Actor,
    *,
    audit: AuditSink | None = None,
) -> dict:
    """Delete a template unless an active run still uses its key; renumber the rest."""
    _require_manager(actor)
    template = _require_template(product_id, template_id)

    in_use = db.session.execute(
        select(ProductionRunStep.id)
        .join(ProductionRun, ProductionRunStep.run_id == ProductionRun.id)
        .where(
            ProductionRunStep.template_key == template.key,
            ProductionRun.product_id == product_id,
            ProductionRun.status.in_(RUN_ACTIVE_STATUSES),
        )
        .limit(1)
    ).first()
    if in_use:
        raise ValidationError(
            "Cannot delete this step template because it is used by an active production run."
        )

    removed = {"id": template.id, "key": template.key, "label": template.label, "order": template.order}
    db.session.delete(template)
    db.session.flush()

    for idx, remaining in enumerate(_templates_for(product_id), start=1):
        if remaining.order != idx:
            remaining.order = idx
    db.session.commit()

    record_safely(audit or DatabaseAuditSink(), StepTemplateDeleted(
        entity_id=product_id,
        actor_id=actor.id,
        template_id=removed["id"],
        template_key=removed["key"],
        template_label=removed["label"],
        order=removed["order"],
    ))
    return {"success": True, "deleted": removed}
