"""
Change Request aggregate — ChangeRequest, ChangeApprovalRecord, ChangeSequence.

Lifecycle (see CHANGE_TRANSITIONS):
    Draft → Pending Approval → {Approved | Rejected}
    Approved → In Progress → Completed
    Rejected and Completed are terminal.

ChangeApprovalRecord is the approval ledger. Records are NEVER updated or
deleted; step progress and the approve/reject outcome are always derived by
replaying them (see services/approval_engine.py), never from a counter.

ChangeRequest.version is the optimistic-lock column: every UPDATE issued by
the ORM checks and bumps it, so two writers that read the same version
cannot both commit.
"""

from change_engine.models import db
from change_engine.models.base import AuditedTenantModel, TenantModel, iso, utcnow

# ── Lifecycle ─────────────────────────────────────────────────────────────────

STATUS_DRAFT = "Draft"
STATUS_PENDING = "Pending Approval"
STATUS_APPROVED = "Approved"
STATUS_REJECTED = "Rejected"
STATUS_IN_PROGRESS = "In Progress"
STATUS_COMPLETED = "Completed"

CHANGE_STATUSES = (
    STATUS_DRAFT,
    STATUS_PENDING,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
)
TERMINAL_STATUSES = frozenset({STATUS_REJECTED, STATUS_COMPLETED})

# action → allowed source states + target state.
# "submit" may land on Approved instead when no approval is required.
CHANGE_TRANSITIONS = {
    "submit": {"from": {STATUS_DRAFT}, "to": STATUS_PENDING},
    "approve": {"from": {STATUS_PENDING}, "to": STATUS_APPROVED},
    "reject": {
        "from": {STATUS_DRAFT, STATUS_PENDING, STATUS_APPROVED, STATUS_IN_PROGRESS},
        "to": STATUS_REJECTED,
    },
    "start": {"from": {STATUS_APPROVED}, "to": STATUS_IN_PROGRESS},
    "complete": {"from": {STATUS_IN_PROGRESS}, "to": STATUS_COMPLETED},
}

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"

SYSTEM_APPROVER = "system"


class ChangeRequest(AuditedTenantModel):
    """
    A proposed operational change.

    Snapshot columns (approval_steps, escalation_rules, risk_controls,
    maintenance_window, requires_*) are copied from reference data at
    creation time and are never edited afterwards.
    """

    __tablename__ = "change_requests"

    id = db.Column(db.Integer, primary_key=True)
    change_number = db.Column(db.String(40), nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)

    # Descriptive
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    change_plan = db.Column(db.Text, default="")
    rollback_plan = db.Column(db.Text, default="")
    client_id = db.Column(db.String(64), nullable=True, index=True)
    submitted_by = db.Column(db.String(150), nullable=False)
    associated_assets = db.Column(db.JSON, nullable=False, default=list)
    associated_tickets = db.Column(db.JSON, nullable=False, default=list)

    # Classification & risk
    category_id = db.Column(
        db.Integer,
        db.ForeignKey("change_categories.id", ondelete="SET NULL"),
        nullable=True,
    )
    category_name = db.Column(db.String(200), nullable=True)
    change_type = db.Column(db.String(100), nullable=True)
    is_emergency = db.Column(db.Boolean, nullable=False, default=False)
    risk_level = db.Column(db.String(20), nullable=False)
    impact = db.Column(db.String(20), nullable=False)
    risk_score = db.Column(db.Float, nullable=False, default=0.0)
    impact_scores = db.Column(db.JSON, nullable=False, default=dict)
    risk_matrix_id = db.Column(db.Integer, nullable=True)
    risk_matrix_name = db.Column(db.String(200), nullable=True)
    risk_controls = db.Column(db.JSON, nullable=False, default=dict)

    # Requirements copied from the category
    requires_approval = db.Column(db.Boolean, nullable=False, default=True)
    requires_testing = db.Column(db.Boolean, nullable=False, default=False)
    requires_rollback = db.Column(db.Boolean, nullable=False, default=False)
    requires_documentation = db.Column(db.Boolean, nullable=False, default=False)
    requires_communication = db.Column(db.Boolean, nullable=False, default=False)
    maintenance_window = db.Column(db.JSON, nullable=False, default=dict)
    notification_policy = db.Column(db.JSON, nullable=False, default=dict)

    # Workflow snapshot (immutable once set)
    approval_workflow_id = db.Column(db.Integer, nullable=True)
    approval_workflow_name = db.Column(db.String(200), nullable=True)
    approval_steps = db.Column(db.JSON, nullable=False, default=list)
    escalation_rules = db.Column(db.JSON, nullable=False, default=dict)

    # Lifecycle
    status = db.Column(db.String(30), nullable=False, default=STATUS_DRAFT)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(150), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    last_escalated_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Last escalation notice for the current step (notification clock)",
    )

    approvals = db.relationship(
        "ChangeApprovalRecord",
        back_populates="change_request",
        lazy="select",
        order_by="ChangeApprovalRecord.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "change_number", name="uq_change_request_tenant_number"),
        db.Index("ix_change_requests_tenant_status", "tenant_id", "status"),
        db.Index("ix_change_requests_tenant_planned_start", "tenant_id", "planned_start_date"),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def facts(self):
        """Request attributes visible to conditional-skip rules."""
        return {
            "risk_level": self.risk_level,
            "impact": self.impact,
            "risk_score": self.risk_score,
            "category": self.category_name,
            "change_type": self.change_type,
            "is_emergency": self.is_emergency,
            "requires_testing": self.requires_testing,
            "requires_rollback": self.requires_rollback,
            "requires_documentation": self.requires_documentation,
            "requires_communication": self.requires_communication,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "change_number": self.change_number,
            "version": self.version,
            "title": self.title,
            "description": self.description,
            "change_plan": self.change_plan,
            "rollback_plan": self.rollback_plan,
            "client_id": self.client_id,
            "submitted_by": self.submitted_by,
            "associated_assets": self.associated_assets or [],
            "associated_tickets": self.associated_tickets or [],
            "category_id": self.category_id,
            "category": self.category_name,
            "change_type": self.change_type,
            "is_emergency": self.is_emergency,
            "risk_level": self.risk_level,
            "impact": self.impact,
            "risk_score": self.risk_score,
            "impact_scores": self.impact_scores or {},
            "risk_matrix_id": self.risk_matrix_id,
            "risk_matrix": self.risk_matrix_name,
            "risk_controls": self.risk_controls or {},
            "requires_approval": self.requires_approval,
            "requires_testing": self.requires_testing,
            "requires_rollback": self.requires_rollback,
            "requires_documentation": self.requires_documentation,
            "requires_communication": self.requires_communication,
            "maintenance_window": self.maintenance_window or {},
            "approval_workflow_id": self.approval_workflow_id,
            "approval_workflow": self.approval_workflow_name,
            "approval_steps": self.approval_steps or [],
            "escalation_rules": self.escalation_rules or {},
            "status": self.status,
            "submitted_at": iso(self.submitted_at),
            "planned_start_date": iso(self.planned_start_date),
            "planned_end_date": iso(self.planned_end_date),
            "actual_start_date": iso(self.actual_start_date),
            "actual_end_date": iso(self.actual_end_date),
            "approved_by": self.approved_by,
            "approved_at": iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ChangeRequest {self.change_number} [{self.status}]>"


class ChangeApprovalRecord(TenantModel):
    """
    Immutable approve / reject decision on a change request.

    Business rules:
    - Records are NEVER deleted or updated — append-only ledger.
    - step_number ties an approval to one step of the request's snapshot;
      it is NULL only for decisions on requests without approval steps.
    - (change_request_id, step_number, approver, decision) is unique, so a
      repeated approval by the same identity can never count twice even
      when two writers race.
    - is_system marks records synthesised by the escalation sweep.
    """

    __tablename__ = "change_approval_records"

    id = db.Column(db.Integer, primary_key=True)
    change_request_id = db.Column(
        db.Integer,
        db.ForeignKey("change_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    step_number = db.Column(db.Integer, nullable=True)
    approver = db.Column(db.String(150), nullable=False)
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    reason = db.Column(db.Text, nullable=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    change_request = db.relationship("ChangeRequest", back_populates="approvals")

    __table_args__ = (
        db.UniqueConstraint(
            "change_request_id", "step_number", "approver", "decision",
            name="uq_change_approval_step_approver",
        ),
        db.Index("ix_change_approvals_tenant_request", "tenant_id", "change_request_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "change_request_id": self.change_request_id,
            "step_number": self.step_number,
            "approver": self.approver,
            "decision": self.decision,
            "reason": self.reason,
            "is_system": self.is_system,
            "timestamp": iso(self.created_at),
        }

    def __repr__(self):
        return f"<ChangeApprovalRecord #{self.id} cr={self.change_request_id} step={self.step_number} {self.decision}>"


class ChangeSequence(TenantModel):
    """Per-tenant counter backing the default change-number generator."""

    __tablename__ = "change_sequences"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_change_sequence_tenant_name"),
    )
