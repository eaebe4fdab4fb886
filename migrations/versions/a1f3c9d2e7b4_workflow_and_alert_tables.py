"""workflow_and_alert_tables

Creates the approval workflow and alert tables:
  - workflow_instances         — approval requests (numero unique)
  - approval_records           — step decisions, unique per (instance, step)
  - workflow_numero_sequences  — numero counter per (prefix, year)
  - alerts                     — one unresolved alert per (type, entity) via partial index
  - scheduled_jobs             — periodic job registry (alert_scan)

invoices / contracts belong to the dashboard schema and are not created here.

Tables are created conditionally (IF NOT EXISTS semantics) so the revision
can run against databases that already received them via db.create_all().

Revision ID: a1f3c9d2e7b4
Revises:
Create Date: 2026-10-19 09:12:41.518203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f3c9d2e7b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── WorkflowInstance ──────────────────────────────────────────────────
    if "workflow_instances" not in existing:
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("numero", sa.String(length=32), nullable=False,
                      comment="Human-readable code: {PREFIX}-{YEAR}-{NNNN}"),
            sa.Column("type", sa.String(length=30), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("amount", sa.Numeric(14, 2), nullable=True),
            sa.Column("priority", sa.String(length=20), nullable=True),
            sa.Column("subsidiary_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("submitter_id", sa.String(length=64), nullable=False),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("numero"),
        )
        op.create_index("ix_workflow_instances_type", "workflow_instances", ["type"])
        op.create_index("ix_workflow_instances_status", "workflow_instances", ["status"])
        op.create_index("ix_workflow_instances_submitter_id", "workflow_instances", ["submitter_id"])
        op.create_index("ix_workflow_instances_subsidiary_id", "workflow_instances", ["subsidiary_id"])

    # ── ApprovalRecord ────────────────────────────────────────────────────
    if "approval_records" not in existing:
        op.create_table(
            "approval_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("step_ordinal", sa.Integer(), nullable=False),
            sa.Column("approver_id", sa.String(length=64), nullable=False),
            sa.Column("decision", sa.String(length=20), nullable=False,
                      comment="approved | rejected"),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "step_ordinal",
                                name="uq_approval_records_instance_step"),
        )
        op.create_index("ix_approval_records_instance_id", "approval_records", ["instance_id"])

    # ── WorkflowNumeroSequence ────────────────────────────────────────────
    if "workflow_numero_sequences" not in existing:
        op.create_table(
            "workflow_numero_sequences",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("prefix", sa.String(length=10), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("prefix", "year", name="uq_numero_sequences_prefix_year"),
        )

    # ── Alert ─────────────────────────────────────────────────────────────
    if "alerts" not in existing:
        op.create_table(
            "alerts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="medium"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("linked_entity_type", sa.String(length=40), nullable=True),
            sa.Column("linked_entity_id", sa.Integer(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_alerts_type", "alerts", ["type"])
        op.create_index("ix_alerts_resolved", "alerts", ["resolved"])
        op.create_index(
            "uq_alerts_open_per_entity", "alerts",
            ["type", "linked_entity_type", "linked_entity_id"],
            unique=True,
            sqlite_where=sa.text("resolved = 0"),
            postgresql_where=sa.text("resolved = false"),
        )

    # ── ScheduledJob ──────────────────────────────────────────────────────
    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_seconds", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    for table in ("scheduled_jobs", "alerts", "workflow_numero_sequences",
                  "approval_records", "workflow_instances"):
        if table in existing:
            op.drop_table(table)
