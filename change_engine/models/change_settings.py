"""
Change Management reference data — risk matrices, categories, workflows.

These three tables are the per-tenant "settings" the approval engine reads
at change-creation time. They are mutated only through the settings API
(change_settings_service); the approval flow never writes to them.

Nested shapes (risk levels, impact categories, approval steps, escalation
rules, maintenance windows, notification policy) are stored as JSON
documents. Requests copy what they need at creation time, so editing a
workflow here never alters an in-flight change request.
"""

from change_engine.models import db
from change_engine.models.base import AuditedTenantModel, iso

# ── Constants ─────────────────────────────────────────────────────────────────

# Ordered lowest → highest; index position is the severity rank.
RISK_LEVELS = ("low", "medium", "high", "critical")
IMPACT_LEVELS = RISK_LEVELS

CALCULATION_METHODS = frozenset({"weighted_average", "highest_impact", "custom"})
TIMEOUT_ACTIONS = frozenset({"auto_approve", "auto_reject", "escalate"})
NOTIFICATION_CHANNELS = frozenset({"email", "sms", "slack", "teams"})
NOTIFICATION_TIMINGS = frozenset({"created", "approved", "rejected", "implemented", "completed"})

SETTING_KINDS = ("approval_workflow", "risk_matrix", "change_category")


def risk_rank(level):
    """Severity rank of a level (unknown levels rank below 'low')."""
    try:
        return RISK_LEVELS.index(level)
    except ValueError:
        return -1


class RiskMatrix(AuditedTenantModel):
    """
    Risk assessment matrix.

    risk_levels: [{level, label, color, description, auto_approval_allowed,
                   required_approvers, max_downtime_minutes, rollback_required,
                   testing_required, documentation_required,
                   communication_required}]
    impact_categories: [{category, label, description, weight,
                         thresholds: {low, medium, high, critical}}]

    Exactly one active default matrix per tenant is expected; the creation
    path tolerates several (first by id wins) and logs the violation.
    """

    __tablename__ = "change_risk_matrices"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    risk_levels = db.Column(db.JSON, nullable=False, default=list)
    impact_categories = db.Column(db.JSON, nullable=False, default=list)
    calculation_method = db.Column(
        db.String(30), nullable=False, default="weighted_average",
        comment="weighted_average | highest_impact | custom",
    )
    custom_formula = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_risk_matrix_tenant_name"),
    )

    def level(self, level):
        """Return the risk level entry for *level*, or None."""
        for entry in self.risk_levels or []:
            if entry.get("level") == level:
                return entry
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": "risk_matrix",
            "name": self.name,
            "description": self.description,
            "risk_levels": self.risk_levels or [],
            "impact_categories": self.impact_categories or [],
            "calculation_method": self.calculation_method,
            "custom_formula": self.custom_formula,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<RiskMatrix {self.id}: {self.name}>"


class ChangeCategory(AuditedTenantModel):
    """
    Change category with the defaults applied to new requests.

    default_maintenance_window: {duration_minutes, preferred_times: ["HH:MM"],
                                 blackout_periods: [{start, end, reason}]}
    notifications: {stakeholders: [...], channels: [...], timing: [...]}

    sort_order is catalog display order only — it carries no business
    priority.
    """

    __tablename__ = "change_categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    color = db.Column(db.String(20), default="#3b82f6")
    icon = db.Column(db.String(50), default="")
    default_risk_level = db.Column(db.String(20), nullable=False, default="medium")
    default_impact_level = db.Column(db.String(20), nullable=False, default="medium")
    requires_approval = db.Column(db.Boolean, nullable=False, default=True)
    requires_testing = db.Column(db.Boolean, nullable=False, default=False)
    requires_rollback = db.Column(db.Boolean, nullable=False, default=False)
    requires_documentation = db.Column(db.Boolean, nullable=False, default=False)
    requires_communication = db.Column(db.Boolean, nullable=False, default=False)
    default_maintenance_window = db.Column(db.JSON, nullable=False, default=dict)
    approval_workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("change_approval_workflows.id", ondelete="SET NULL"),
        nullable=True,
    )
    notifications = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_change_category_tenant_name"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": "change_category",
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "default_risk_level": self.default_risk_level,
            "default_impact_level": self.default_impact_level,
            "requires_approval": self.requires_approval,
            "requires_testing": self.requires_testing,
            "requires_rollback": self.requires_rollback,
            "requires_documentation": self.requires_documentation,
            "requires_communication": self.requires_communication,
            "default_maintenance_window": self.default_maintenance_window or {},
            "approval_workflow_id": self.approval_workflow_id,
            "notifications": self.notifications or {},
            "is_active": self.is_active,
            "is_default": self.is_default,
            "sort_order": self.sort_order,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ChangeCategory {self.id}: {self.name}>"


class ApprovalWorkflow(AuditedTenantModel):
    """
    Prioritised approval workflow definition.

    trigger_conditions: {risk_level?: [...], impact_level?: [...],
                         change_types?: [...], business_hours?: bool,
                         emergency_override?: bool}
    approval_steps: [{step_number, name, description, required_approvers,
                      approver_roles, timeout_hours, parallel_approval,
                      conditional_skip: {condition, skip_if}}]
    escalation_rules: {timeout_action, escalation_path, notification_frequency}

    Lower priority numbers are evaluated first; the first workflow whose
    present conditions all match wins.
    """

    __tablename__ = "change_approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    trigger_conditions = db.Column(db.JSON, nullable=False, default=dict)
    approval_steps = db.Column(db.JSON, nullable=False, default=list)
    escalation_rules = db.Column(db.JSON, nullable=False, default=dict)
    priority = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_approval_workflow_tenant_name"),
        db.Index("ix_change_workflows_tenant_priority", "tenant_id", "priority"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": "approval_workflow",
            "name": self.name,
            "description": self.description,
            "trigger_conditions": self.trigger_conditions or {},
            "approval_steps": self.approval_steps or [],
            "escalation_rules": self.escalation_rules or {},
            "priority": self.priority,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ApprovalWorkflow {self.id}: {self.name} (p={self.priority})>"
