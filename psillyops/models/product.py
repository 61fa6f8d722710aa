"""
PsillyOps — Product catalogue models used by production.

Models:
    - Product:                 sellable item; only active products can be produced
    - ProductionStepTemplate:  product-level default step, copied into every new run

Architecture:
    Product ──1:N──▶ ProductionStepTemplate   (ordered, gap-free 1..N)
"""

import uuid
from datetime import datetime, timezone

from psillyops.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class Product(db.Model):
    """Sellable product. Inactive products cannot start new production runs."""

    __tablename__ = "products"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    step_templates = db.relationship(
        "ProductionStepTemplate",
        backref="product",
        lazy="dynamic",
        order_by="ProductionStepTemplate.order",
    )

    def to_summary(self) -> dict:
        return {"id": self.id, "name": self.name, "sku": self.sku}

    def to_dict(self) -> dict:
        return {
            **self.to_summary(),
            "active": self.active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Product {self.sku}: {self.name}>"


class ProductionStepTemplate(db.Model):
    """Reusable step definition for a product (key, label, order, required)."""

    __tablename__ = "production_step_templates"
    __table_args__ = (
        db.UniqueConstraint("product_id", "key", name="uq_step_template_product_key"),
        db.Index("idx_step_template_product_order", "product_id", "order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    key = db.Column(db.String(64), nullable=False, comment="letters / digits / underscore")
    label = db.Column(db.String(200), nullable=False)
    order = db.Column(db.Integer, nullable=False, comment="1-based, gap-free per product")
    required = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "key": self.key,
            "label": self.label,
            "order": self.order,
            "required": self.required,
        }

    def __repr__(self):
        return f"<ProductionStepTemplate {self.product_id}#{self.order} {self.key}>"
