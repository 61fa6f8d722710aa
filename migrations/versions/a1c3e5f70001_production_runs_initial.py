"""production_runs_initial

Creates the production tables:
  - products, production_step_templates   — catalogue + per-product default steps
  - tracking_tokens                       — public qr_ tokens, one per run
  - production_runs, production_run_steps — run aggregate
  - activity_logs                         — append-only audit trail
  - run_edit_proposals                    — free-text edit proposals awaiting confirmation

Tables created conditionally (IF NOT EXISTS semantics) so the revision can
run against a database that already received them via db.create_all().

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18 09:12:44.530118
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c3e5f70001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Catalogue ─────────────────────────────────────────────────────────
    if "products" not in existing:
        op.create_table(
            "products",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("sku", sa.String(length=64), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("sku"),
        )

    if "production_step_templates" not in existing:
        op.create_table(
            "production_step_templates",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("key", sa.String(length=64), nullable=False, comment="letters / digits / underscore"),
            sa.Column("label", sa.String(length=200), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False, comment="1-based, gap-free per product"),
            sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("product_id", "key", name="uq_step_template_product_key"),
        )
        op.create_index("ix_production_step_templates_product_id", "production_step_templates", ["product_id"])
        op.create_index("idx_step_template_product_order", "production_step_templates", ["product_id", "order"])

    # ── Tracking tokens ───────────────────────────────────────────────────
    if "tracking_tokens" not in existing:
        op.create_table(
            "tracking_tokens",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("token", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE",
                      comment="ACTIVE | REVOKED"),
            sa.Column("entity_type", sa.String(length=30), nullable=False, server_default="production_run"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("redirect_url", sa.String(length=300), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tracking_tokens_token", "tracking_tokens", ["token"], unique=True)

    # ── Runs + steps ──────────────────────────────────────────────────────
    if "production_runs" not in existing:
        op.create_table(
            "production_runs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PLANNED",
                      comment="PLANNED | IN_PROGRESS | BLOCKED | COMPLETED | CANCELLED"),
            sa.Column("tracking_token_id", sa.String(length=36), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True, comment="Actor id, null for system"),
            sa.Column("status_reason", sa.Text(), nullable=True, comment="Why the run was blocked / cancelled"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["tracking_token_id"], ["tracking_tokens.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tracking_token_id"),
        )
        op.create_index("ix_production_runs_product_id", "production_runs", ["product_id"])
        op.create_index("idx_production_run_status", "production_runs", ["status"])

    if "production_run_steps" not in existing:
        op.create_table(
            "production_run_steps",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("run_id", sa.String(length=36), nullable=False),
            sa.Column("template_key", sa.String(length=64), nullable=False),
            sa.Column("label", sa.String(length=200), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False, comment="1-based, contiguous within the run"),
            sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING",
                      comment="PENDING | IN_PROGRESS | COMPLETED | SKIPPED"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("skipped_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("skip_reason", sa.Text(), nullable=True),
            sa.Column("performed_by", sa.String(length=64), nullable=True, comment="Actor who last acted"),
            sa.Column("assigned_to", sa.String(length=64), nullable=True, comment="Actor who claimed the step"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["run_id"], ["production_runs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_production_run_steps_run_id", "production_run_steps", ["run_id"])
        op.create_index("idx_run_step_run_order", "production_run_steps", ["run_id", "order"])
        op.create_index("idx_run_step_assignee", "production_run_steps", ["assigned_to", "status"])

    # ── Audit + proposals ─────────────────────────────────────────────────
    if "activity_logs" not in existing:
        op.create_table(
            "activity_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False, comment="production_run | product"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=False, server_default="system"),
            sa.Column("summary", sa.String(length=500), nullable=False, server_default=""),
            sa.Column("before_json", sa.Text(), nullable=True),
            sa.Column("after_json", sa.Text(), nullable=True),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("tags_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_activity_entity", "activity_logs", ["entity_type", "entity_id"])
        op.create_index("idx_activity_action", "activity_logs", ["action"])
        op.create_index("idx_activity_ts", "activity_logs", ["timestamp"])

    if "run_edit_proposals" not in existing:
        op.create_table(
            "run_edit_proposals",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("run_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING",
                      comment="PENDING | CONFIRMED | FAILED | EXPIRED"),
            sa.Column("input_text", sa.Text(), nullable=False),
            sa.Column("operations_json", sa.Text(), nullable=False),
            sa.Column("results_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("confirmed_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["run_id"], ["production_runs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_run_edit_proposals_run_id", "run_edit_proposals", ["run_id"])


def downgrade():
    op.drop_table("run_edit_proposals")
    op.drop_table("activity_logs")
    op.drop_table("production_run_steps")
    op.drop_table("production_runs")
    op.drop_table("tracking_tokens")
    op.drop_table("production_step_templates")
    op.drop_table("products")
