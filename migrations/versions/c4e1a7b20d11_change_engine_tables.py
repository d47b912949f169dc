"""change_engine_tables

Create tenants, change-management reference data, change requests, the
approval ledger, number sequences, the notification outbox and the
scheduled-job registry.

Revision ID: c4e1a7b20d11
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "c4e1a7b20d11"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns():
    return [
        sa.Column("created_by", sa.String(length=150), nullable=True),
        sa.Column("updated_by", sa.String(length=150), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _tenant_fk():
    return sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE")


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "tenants" not in existing_tables:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("plan", sa.String(length=50), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    op.create_table(
        "change_risk_matrices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("risk_levels", sa.JSON(), nullable=False),
        sa.Column("impact_categories", sa.JSON(), nullable=False),
        sa.Column("calculation_method", sa.String(length=30), nullable=False,
                  server_default="weighted_average"),
        sa.Column("custom_formula", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_audit_columns(),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_risk_matrix_tenant_name"),
    )
    op.create_index("ix_change_risk_matrices_tenant_id", "change_risk_matrices", ["tenant_id"])

    op.create_table(
        "change_approval_workflows",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_conditions", sa.JSON(), nullable=False),
        sa.Column("approval_steps", sa.JSON(), nullable=False),
        sa.Column("escalation_rules", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_audit_columns(),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_approval_workflow_tenant_name"),
    )
    op.create_index("ix_change_approval_workflows_tenant_id", "change_approval_workflows", ["tenant_id"])
    op.create_index("ix_change_workflows_tenant_priority", "change_approval_workflows",
                    ["tenant_id", "priority"])

    op.create_table(
        "change_categories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=20), nullable=True),
        sa.Column("icon", sa.String(length=50), nullable=True),
        sa.Column("default_risk_level", sa.String(length=20), nullable=False, server_default="medium"),
        sa.Column("default_impact_level", sa.String(length=20), nullable=False, server_default="medium"),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_testing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_rollback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_documentation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_communication", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("default_maintenance_window", sa.JSON(), nullable=False),
        sa.Column("approval_workflow_id", sa.Integer(), nullable=True),
        sa.Column("notifications", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_audit_columns(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["approval_workflow_id"], ["change_approval_workflows.id"],
                                ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_change_category_tenant_name"),
    )
    op.create_index("ix_change_categories_tenant_id", "change_categories", ["tenant_id"])
    op.create_index("ix_change_categories_approval_workflow_id", "change_categories",
                    ["approval_workflow_id"])

    op.create_table(
        "change_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("change_number", sa.String(length=40), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("change_plan", sa.Text(), nullable=True),
        sa.Column("rollback_plan", sa.Text(), nullable=True),
        sa.Column("client_id", sa.String(length=64), nullable=True),
        sa.Column("submitted_by", sa.String(length=150), nullable=False),
        sa.Column("associated_assets", sa.JSON(), nullable=False),
        sa.Column("associated_tickets", sa.JSON(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("category_name", sa.String(length=200), nullable=True),
        sa.Column("change_type", sa.String(length=100), nullable=True),
        sa.Column("is_emergency", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("risk_level", sa.String(length=20), nullable=False),
        sa.Column("impact", sa.String(length=20), nullable=False),
        sa.Column("risk_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("impact_scores", sa.JSON(), nullable=False),
        sa.Column("risk_matrix_id", sa.Integer(), nullable=True),
        sa.Column("risk_matrix_name", sa.String(length=200), nullable=True),
        sa.Column("risk_controls", sa.JSON(), nullable=False),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_testing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_rollback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_documentation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_communication", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("maintenance_window", sa.JSON(), nullable=False),
        sa.Column("notification_policy", sa.JSON(), nullable=False),
        sa.Column("approval_workflow_id", sa.Integer(), nullable=True),
        sa.Column("approval_workflow_name", sa.String(length=200), nullable=True),
        sa.Column("approval_steps", sa.JSON(), nullable=False),
        sa.Column("escalation_rules", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="Draft"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(length=150), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(length=150), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["category_id"], ["change_categories.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "change_number", name="uq_change_request_tenant_number"),
    )
    op.create_index("ix_change_requests_tenant_id", "change_requests", ["tenant_id"])
    op.create_index("ix_change_requests_client_id", "change_requests", ["client_id"])
    op.create_index("ix_change_requests_category_id", "change_requests", ["category_id"])
    op.create_index("ix_change_requests_tenant_status", "change_requests", ["tenant_id", "status"])
    op.create_index("ix_change_requests_tenant_planned_start", "change_requests",
                    ["tenant_id", "planned_start_date"])

    op.create_table(
        "change_approval_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("change_request_id", sa.Integer(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=True),
        sa.Column("approver", sa.String(length=150), nullable=False),
        sa.Column("decision", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["change_request_id"], ["change_requests.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("change_request_id", "step_number", "approver", "decision",
                            name="uq_change_approval_step_approver"),
    )
    op.create_index("ix_change_approval_records_tenant_id", "change_approval_records", ["tenant_id"])
    op.create_index("ix_change_approval_records_change_request_id", "change_approval_records",
                    ["change_request_id"])
    op.create_index("ix_change_approvals_tenant_request", "change_approval_records",
                    ["tenant_id", "change_request_id"])

    op.create_table(
        "change_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_change_sequence_tenant_name"),
    )
    op.create_index("ix_change_sequences_tenant_id", "change_sequences", ["tenant_id"])

    op.create_table(
        "change_notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("recipient", sa.String(length=150), nullable=True),
        sa.Column("event", sa.String(length=30), nullable=False, server_default="created"),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("severity", sa.String(length=20), nullable=True),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column("change_request_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_change_notifications_tenant_id", "change_notifications", ["tenant_id"])
    op.create_index("ix_change_notifications_recipient", "change_notifications", ["recipient"])
    op.create_index("ix_change_notifications_change_request_id", "change_notifications",
                    ["change_request_id"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    op.drop_table("change_notifications")
    op.drop_table("change_sequences")
    op.drop_table("change_approval_records")
    op.drop_table("change_requests")
    op.drop_table("change_categories")
    op.drop_table("change_approval_workflows")
    op.drop_table("change_risk_matrices")
    op.drop_table("scheduled_jobs")
    op.drop_table("tenants")
