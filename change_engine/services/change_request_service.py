"""
Change Request Lifecycle Service.

Owns every write to ChangeRequest and the approval ledger. Blueprints stay
HTTP-only; the escalation sweep reuses the same approval/rejection
primitives so user decisions and timeout actions serialise through one
code path.

Transaction rules:
    - One decision = one transaction: ledger insert + request update +
      notification outbox rows, committed together.
    - ChangeRequest.version is an optimistic lock. A stale write rolls back
      and raises ConcurrencyConflictError; retrying is the caller's call.
    - Step progress is replayed from the ledger inside the transaction,
      never read from a stored counter.
"""

from __future__ import annotations

import copy
import logging
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from change_engine.core.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    InvalidTransitionError,
    ValidationError,
)
from change_engine.models import db
from change_engine.models.base import utcnow
from change_engine.models.change_request import (
    CHANGE_STATUSES,
    CHANGE_TRANSITIONS,
    DECISION_APPROVED,
    DECISION_REJECTED,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
    SYSTEM_APPROVER,
    ChangeApprovalRecord,
    ChangeRequest,
)
from change_engine.models.change_settings import IMPACT_LEVELS, RISK_LEVELS, ChangeCategory
from change_engine.services import change_settings_service as settings
from change_engine.services.approval_engine import (
    OUTCOME_APPROVED,
    OUTCOME_PENDING,
    ApprovalState,
    ledger_agrees,
    state_for_request,
)
from change_engine.services.collaborators import get_collaborators
from change_engine.services.helpers.scoped_queries import get_scoped
from change_engine.services.risk_matrix import RiskAssessment, evaluate_risk, required_controls
from change_engine.services.workflow_selector import choose_route
from change_engine.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

CHANGE_SEQUENCE = "changes"

# Fields a caller may edit after creation. Everything else is either a
# creation-time snapshot or derived from the ledger.
EDITABLE_FIELDS = (
    "title", "description", "change_plan", "rollback_plan", "client_id",
    "associated_assets", "associated_tickets", "planned_start_date", "planned_end_date",
)
_DATE_FIELDS = ("planned_start_date", "planned_end_date")


# ══════════════════════════════════════════════════════════════════════════════
# Risk preview & routing
# ══════════════════════════════════════════════════════════════════════════════


def _resolve_category(tenant_id: int, data: dict) -> dict | None:
    """Active category named by id (or by name); None when not given.

    Raises:
        NotFoundError: The id does not exist in the tenant.
        ValidationError: The category exists but is inactive.
    """
    category_id = data.get("category_id")
    if category_id is not None:
        category = settings.get_category_for_change_creation(tenant_id, category_id)
        if category is None:
            get_scoped(ChangeCategory, category_id, tenant_id=tenant_id)
            raise ValidationError("Change category is inactive", details={"category_id": category_id})
        return category

    name = data.get("category")
    if name:
        for category in settings.get_categories_for_change_creation(tenant_id):
            if category["name"].casefold() == str(name).casefold():
                return category
        logger.warning("Unknown change category name; creating without category defaults",
                       extra={"tenant_id": tenant_id, "category_name": name})
    return None


def _assess(matrix: dict | None, impact_scores: dict | None, fallback: str) -> RiskAssessment:
    if impact_scores:
        return evaluate_risk(matrix, impact_scores, fallback_level=fallback)
    assessment = RiskAssessment(
        score=0.0,
        level=fallback,
        controls=required_controls(matrix, fallback),
        matrix_id=(matrix or {}).get("id"),
        matrix_name=(matrix or {}).get("name"),
    )
    if not matrix:
        assessment.warnings.append("No active risk matrix; using fallback risk level")
    return assessment


def _fallback_level(data: dict, category: dict | None) -> str:
    level = data.get("risk_level") or (category or {}).get("default_risk_level") or "medium"
    if level not in RISK_LEVELS:
        raise ValidationError("Invalid risk level", details={"risk_level": f"must be one of {', '.join(RISK_LEVELS)}"})
    return level


def _impact_level(data: dict, category: dict | None) -> str:
    impact = data.get("impact") or (category or {}).get("default_impact_level") or "medium"
    if impact not in IMPACT_LEVELS:
        raise ValidationError("Invalid impact level", details={"impact": f"must be one of {', '.join(IMPACT_LEVELS)}"})
    return impact


def _snapshot_steps(route, controls: dict) -> list[dict]:
    """Copy-on-create approval steps.

    The first step needs at least as many approvers as the resolved risk
    level demands, except on emergency workflows. When approval is required
    but no workflow applies, one step carries the level's approver count.
    """
    floor = int((controls or {}).get("required_approvers") or 0)
    if route.workflow:
        steps = sorted(copy.deepcopy(route.workflow.get("approval_steps") or []),
                       key=lambda s: int(s["step_number"]))
        emergency = bool((route.workflow.get("trigger_conditions") or {}).get("emergency_override"))
        if steps and not emergency and floor > int(steps[0].get("required_approvers") or 1):
            steps[0]["required_approvers"] = floor
        return steps
    if route.requires_approval:
        return [{
            "step_number": 1,
            "name": "Risk Approval",
            "description": "Approval required by the change category or risk level",
            "required_approvers": max(floor, 1),
            "approver_roles": [],
            "timeout_hours": None,
            "parallel_approval": True,
        }]
    return []


def compute_risk_preview(tenant_id: int, category_id=None, impact_scores: dict | None = None,
                         *, risk_level=None, impact=None, change_type=None, is_emergency=False,
                         now=None) -> dict:
    """Score and route a prospective request without persisting anything."""
    data = {"category_id": category_id, "risk_level": risk_level, "impact": impact}
    category = _resolve_category(tenant_id, data)
    matrix = settings.get_risk_matrix_for_change_creation(tenant_id)
    assessment = _assess(matrix, impact_scores, _fallback_level(data, category))
    impact_level = _impact_level(data, category)
    route = choose_route(
        settings.get_workflows_for_change_creation(tenant_id),
        category=category, risk_level=assessment.level, impact_level=impact_level,
        controls=assessment.controls, change_type=change_type, now=now,
        is_emergency=is_emergency,
    )
    result = assessment.to_dict()
    result.update({
        "impact": impact_level,
        "category": category["name"] if category else None,
        "requires_approval": route.requires_approval,
        "approval_workflow_id": route.workflow_id,
        "approval_workflow": route.workflow.get("name") if route.workflow else None,
        "approval_steps": _snapshot_steps(route, assessment.controls),
    })
    return result


# ══════════════════════════════════════════════════════════════════════════════
# Create / submit
# ══════════════════════════════════════════════════════════════════════════════


def create_change_request(tenant_id: int, data: dict, created_by: str | None = None,
                          *, now=None) -> ChangeRequest:
    """Create a change request with its risk and workflow snapshot.

    ``save_as_draft`` keeps the request in Draft. Otherwise it starts in
    Pending Approval, or directly in Approved when no approval is needed.
    A caller retrying a create passes the already-minted ``change_number``;
    if that request exists it is returned unchanged. A number that matches
    no request of the tenant is ignored and a fresh one is minted.
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    now = now or utcnow()

    retry_number = data.get("change_number")
    if retry_number:
        existing = ChangeRequest.query_for_tenant(tenant_id).filter_by(change_number=retry_number).first()
        if existing is not None:
            logger.info("Create retried with minted change number",
                        extra={"tenant_id": tenant_id, "change_number": retry_number})
            return existing
        logger.warning("Ignoring unknown change number on create",
                       extra={"tenant_id": tenant_id, "change_number": retry_number})

    errors = {}
    title = str(data.get("title") or "").strip()
    if not title:
        errors["title"] = "title is required"
    elif len(title) > 300:
        errors["title"] = "title must be at most 300 characters"
    submitted_by = data.get("submitted_by") or created_by
    if not submitted_by:
        errors["submitted_by"] = "submitted_by is required"
    impact_scores = data.get("impact_scores") or {}
    if not isinstance(impact_scores, dict):
        errors["impact_scores"] = "must be an object of category → score"
    planned = {}
    for key in _DATE_FIELDS:
        try:
            planned[key] = _as_datetime(data.get(key))
        except ValueError as exc:
            errors[key] = str(exc)
    if errors:
        raise ValidationError("Invalid change request", details=errors)
    if planned["planned_start_date"] and planned["planned_end_date"] \
            and planned["planned_end_date"] < planned["planned_start_date"]:
        raise ValidationError("Invalid change request",
                              details={"planned_end_date": "must not be before planned_start_date"})

    category = _resolve_category(tenant_id, data)
    matrix = settings.get_risk_matrix_for_change_creation(tenant_id)
    assessment = _assess(matrix, impact_scores, _fallback_level(data, category))
    impact = _impact_level(data, category)
    is_emergency = bool(data.get("is_emergency", False))
    change_type = data.get("change_type")

    route = choose_route(
        settings.get_workflows_for_change_creation(tenant_id),
        category=category, risk_level=assessment.level, impact_level=impact,
        controls=assessment.controls, change_type=change_type, now=now,
        is_emergency=is_emergency,
    )
    steps = _snapshot_steps(route, assessment.controls)
    workflow = route.workflow or {}
    category = category or {}

    change_number = get_collaborators().numbers.next_id(tenant_id, CHANGE_SEQUENCE)
    actor = created_by or submitted_by

    change = ChangeRequest(
        tenant_id=tenant_id,
        change_number=change_number,
        title=title,
        description=data.get("description") or "",
        change_plan=data.get("change_plan") or "",
        rollback_plan=data.get("rollback_plan") or "",
        client_id=data.get("client_id"),
        submitted_by=submitted_by,
        associated_assets=list(data.get("associated_assets") or []),
        associated_tickets=list(data.get("associated_tickets") or []),
        category_id=category.get("id"),
        category_name=category.get("name"),
        change_type=change_type,
        is_emergency=is_emergency,
        risk_level=assessment.level,
        impact=impact,
        risk_score=assessment.score,
        impact_scores=dict(impact_scores),
        risk_matrix_id=assessment.matrix_id,
        risk_matrix_name=assessment.matrix_name,
        risk_controls=assessment.controls,
        requires_approval=route.requires_approval,
        requires_testing=bool(category.get("requires_testing", assessment.controls.get("testing_required", False))),
        requires_rollback=bool(category.get("requires_rollback", assessment.controls.get("rollback_required", False))),
        requires_documentation=bool(category.get("requires_documentation",
                                                 assessment.controls.get("documentation_required", False))),
        requires_communication=bool(category.get("requires_communication",
                                                 assessment.controls.get("communication_required", False))),
        maintenance_window=copy.deepcopy(category.get("default_maintenance_window") or {}),
        notification_policy=copy.deepcopy(category.get("notifications") or {}),
        approval_workflow_id=workflow.get("id"),
        approval_workflow_name=workflow.get("name"),
        approval_steps=steps,
        escalation_rules=copy.deepcopy(workflow.get("escalation_rules") or {}),
        status=STATUS_DRAFT,
        planned_start_date=planned["planned_start_date"],
        planned_end_date=planned["planned_end_date"],
        created_by=actor,
        updated_by=actor,
        created_at=now,
        updated_at=now,
    )
    db.session.add(change)

    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ChangeRequest", "change_number", change_number) from exc

    if not data.get("save_as_draft"):
        _enter_approval(change, actor, now)
    get_collaborators().notifier.notify(change, "created")
    if change.status == STATUS_APPROVED:
        get_collaborators().notifier.notify(change, "approved")

    change_id = change.id
    commit_change(change_id)
    for warning in assessment.warnings:
        logger.warning(warning, extra={"tenant_id": tenant_id, "change_id": change_id})
    logger.info(
        "Change request created",
        extra={
            "tenant_id": tenant_id, "change_id": change_id, "change_number": change_number,
            "status": change.status, "risk_level": change.risk_level,
            "workflow_id": change.approval_workflow_id,
        },
    )
    return change


def submit_change_request(tenant_id: int, request_id: int, user: str, *, now=None,
                          expected_version: int | None = None) -> ChangeRequest:
    """Draft → Pending Approval (or Approved when nothing needs approving)."""
    now = now or utcnow()
    change = _load(tenant_id, request_id, expected_version)
    _check_transition(change, "submit")
    _enter_approval(change, user, now)
    touch(change, user, now)
    if change.status == STATUS_APPROVED:
        get_collaborators().notifier.notify(change, "approved")
    commit_change(change.id)
    logger.info("Change request submitted",
                extra={"tenant_id": tenant_id, "change_id": request_id, "status": change.status})
    return change


def _enter_approval(change: ChangeRequest, actor: str, now) -> None:
    change.submitted_at = now
    change.status = STATUS_PENDING
    if not change.requires_approval and not change.approval_steps:
        _mark_approved(change, SYSTEM_APPROVER, now)
        return
    state = state_for_request(change)
    if state.outcome == OUTCOME_APPROVED:
        # every step skipped by its condition
        _mark_approved(change, SYSTEM_APPROVER, now)


# ══════════════════════════════════════════════════════════════════════════════
# Decisions (shared with the escalation sweep)
# ══════════════════════════════════════════════════════════════════════════════


def approve(tenant_id: int, request_id: int, approver: str, reason: str | None = None,
            *, expected_version: int | None = None, now=None) -> ChangeRequest:
    """Record an approval for the current step.

    A repeated approval by the same identity on the same step is a no-op:
    nothing is appended and the request is returned unchanged.

    Raises:
        InvalidTransitionError: Request is not Pending Approval.
        ConcurrencyConflictError: Version mismatch or a concurrent writer.
    """
    approver = str(approver or "").strip()
    if not approver:
        raise ValidationError("approver is required", details={"approver": "required"})
    now = now or utcnow()
    change = _load(tenant_id, request_id, expected_version)
    _check_transition(change, "approve")

    appended = apply_approval(change, approver, reason=reason, now=now)
    if appended is None:
        logger.info("Duplicate approval ignored",
                    extra={"tenant_id": tenant_id, "change_id": request_id, "approver": approver})
        return change

    commit_change(change.id)
    logger.info(
        "Change request approval recorded",
        extra={"tenant_id": tenant_id, "change_id": request_id, "approver": approver,
               "step_number": appended.step_number, "status": change.status},
    )
    return change


def reject(tenant_id: int, request_id: int, rejecter: str, reason: str,
           *, expected_version: int | None = None, now=None) -> ChangeRequest:
    """Reject the whole request. Terminal; a reason is mandatory."""
    rejecter = str(rejecter or "").strip()
    reason = str(reason or "").strip()
    errors = {}
    if not rejecter:
        errors["rejecter"] = "required"
    if not reason:
        errors["reason"] = "a rejection reason is required"
    if errors:
        raise ValidationError("Invalid rejection", details=errors)
    now = now or utcnow()
    change = _load(tenant_id, request_id, expected_version)
    _check_transition(change, "reject")

    apply_rejection(change, rejecter, reason=reason, now=now)
    commit_change(change.id)
    logger.info(
        "Change request rejected",
        extra={"tenant_id": tenant_id, "change_id": request_id, "rejecter": rejecter},
    )
    return change


def apply_approval(change: ChangeRequest, approver: str, *, reason=None, now,
                   is_system: bool = False) -> ChangeApprovalRecord | None:
    """Append an approval for the current step and settle the request.

    Does not commit. Returns the new record, or None for a duplicate.
    """
    state = state_for_request(change)
    if state.outcome != OUTCOME_PENDING:
        raise InvalidTransitionError(change.id, "approve", change.status,
                                     reason=f"approval ledger is already {state.outcome}")
    step = state.current
    if approver in step.approvers:
        return None

    record = ChangeApprovalRecord(
        tenant_id=change.tenant_id,
        step_number=step.step_number,
        approver=approver,
        decision=DECISION_APPROVED,
        reason=reason,
        is_system=is_system,
        created_at=now,
        change_request=change,
    )
    db.session.add(record)
    touch(change, approver, now)

    after = state_for_request(change)
    notifier = get_collaborators().notifier
    if is_system:
        notifier.notify(change, "auto_approved", recipients=[change.submitted_by],
                        message=f"Step {step.step_number} ({step.name}) approved after timeout")
    if after.outcome == OUTCOME_APPROVED:
        _mark_approved(change, approver, now)
        notifier.notify(change, "approved")
    elif after.current_step_number != state.current_step_number:
        change.last_escalated_at = None
        _notify_step_advanced(change, after)
    return record


def apply_rejection(change: ChangeRequest, rejecter: str, *, reason: str, now,
                    is_system: bool = False) -> ChangeApprovalRecord:
    """Append a rejection and move the request to Rejected. Does not commit."""
    state = state_for_request(change) if change.status == STATUS_PENDING else None
    record = ChangeApprovalRecord(
        tenant_id=change.tenant_id,
        step_number=state.current_step_number if state else None,
        approver=rejecter,
        decision=DECISION_REJECTED,
        reason=reason,
        is_system=is_system,
        created_at=now,
        change_request=change,
    )
    db.session.add(record)
    change.status = STATUS_REJECTED
    change.rejected_by = rejecter
    change.rejected_at = now
    change.rejection_reason = reason
    touch(change, rejecter, now)
    notifier = get_collaborators().notifier
    if is_system:
        notifier.notify(change, "auto_rejected", recipients=[change.submitted_by], message=reason)
    notifier.notify(change, "rejected", message=reason)
    return record


def _mark_approved(change: ChangeRequest, approver: str, now) -> None:
    change.status = STATUS_APPROVED
    change.approved_by = approver
    change.approved_at = now


def _notify_step_advanced(change: ChangeRequest, state: ApprovalState) -> None:
    step = state.current
    roles = get_collaborators().roles
    recipients = []
    for role in step.approver_roles:
        members = roles.resolve(change.tenant_id, role) or [role]
        recipients.extend(m for m in members if m not in recipients)
    if recipients:
        get_collaborators().notifier.notify(
            change, "step_advanced", recipients=recipients,
            message=f"Step {step.step_number} ({step.name}) awaits approval",
        )


# ══════════════════════════════════════════════════════════════════════════════
# Implementation lifecycle
# ══════════════════════════════════════════════════════════════════════════════


def start_change_request(tenant_id: int, request_id: int, user: str, *, now=None,
                         expected_version: int | None = None) -> ChangeRequest:
    """Approved → In Progress. Stamps actual_start_date when no start was planned."""
    now = now or utcnow()
    change = _load(tenant_id, request_id, expected_version)
    _check_transition(change, "start")
    change.status = STATUS_IN_PROGRESS
    if change.planned_start_date is None and change.actual_start_date is None:
        change.actual_start_date = now
    touch(change, user, now)
    get_collaborators().notifier.notify(change, "implemented")
    commit_change(change.id)
    logger.info("Change request started", extra={"tenant_id": tenant_id, "change_id": request_id})
    return change


def complete_change_request(tenant_id: int, request_id: int, user: str, *, now=None,
                            expected_version: int | None = None) -> ChangeRequest:
    """In Progress → Completed. Stamps actual_end_date."""
    now = now or utcnow()
    change = _load(tenant_id, request_id, expected_version)
    _check_transition(change, "complete")
    change.status = STATUS_COMPLETED
    change.actual_end_date = now
    touch(change, user, now)
    get_collaborators().notifier.notify(change, "completed")
    commit_change(change.id)
    logger.info("Change request completed", extra={"tenant_id": tenant_id, "change_id": request_id})
    return change


def update_change_request(tenant_id: int, request_id: int, data: dict, user: str,
                          *, expected_version: int | None = None, now=None) -> ChangeRequest:
    """Edit descriptive fields. Snapshot, risk, status and ledger fields are immutable."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    now = now or utcnow()
    change = _load(tenant_id, request_id, expected_version)
    if change.is_terminal:
        raise InvalidTransitionError(change.id, "update", change.status,
                                     reason="terminal requests cannot be edited")

    ignored = {"version", "id", "tenant_id"}
    immutable = sorted(k for k in data if k not in EDITABLE_FIELDS and k not in ignored)
    if immutable:
        raise ValidationError(
            "Only descriptive fields can be edited",
            details={field: "immutable after creation" for field in immutable},
        )

    errors = {}
    for key in EDITABLE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key == "title":
            value = str(value or "").strip()
            if not value:
                errors["title"] = "title is required"
                continue
        elif key in _DATE_FIELDS:
            try:
                value = _as_datetime(value)
            except ValueError as exc:
                errors[key] = str(exc)
                continue
        elif key in ("associated_assets", "associated_tickets"):
            value = list(value or [])
        setattr(change, key, value)
    if errors:
        db.session.rollback()
        raise ValidationError("Invalid change request", details=errors)

    touch(change, user, now)
    commit_change(change.id)
    logger.info("Change request updated",
                extra={"tenant_id": tenant_id, "change_id": request_id, "fields": sorted(data)})
    return change


def delete_change_request(tenant_id: int, request_id: int) -> None:
    """Only Drafts without ledger entries can be deleted."""
    change = _load(tenant_id, request_id)
    if change.status != STATUS_DRAFT or change.approvals:
        raise InvalidTransitionError(change.id, "delete", change.status,
                                     reason="only drafts without approval records can be deleted")
    db.session.delete(change)
    commit_change(request_id)
    logger.info("Change request deleted", extra={"tenant_id": tenant_id, "change_id": request_id})


# ══════════════════════════════════════════════════════════════════════════════
# Queries
# ══════════════════════════════════════════════════════════════════════════════


def get_change_request(tenant_id: int, request_id: int) -> ChangeRequest:
    return get_scoped(ChangeRequest, request_id, tenant_id=tenant_id)


def get_approval_ledger(tenant_id: int, request_id: int) -> list[ChangeApprovalRecord]:
    """Append-only ledger of a request, oldest first."""
    change = get_scoped(ChangeRequest, request_id, tenant_id=tenant_id)
    return list(change.approvals)


def get_approval_state(tenant_id: int, request_id: int) -> dict:
    """Replayed step state plus a consistency flag against the stored status."""
    change = get_scoped(ChangeRequest, request_id, tenant_id=tenant_id)
    state = state_for_request(change)
    result = state.to_dict()
    result["status"] = change.status
    result["consistent"] = ledger_agrees(change, state)
    return result


def list_change_requests(tenant_id: int, filters: dict | None = None):
    """Query of a tenant's requests, newest first.

    Filters: status, risk_level, impact, client_id, submitted_by,
    category_id, start_date / end_date (planned start range), q (title).
    """
    filters = filters or {}
    q = ChangeRequest.query_for_tenant(tenant_id)
    for key in ("status", "risk_level", "impact", "client_id", "submitted_by", "category_id"):
        if filters.get(key) not in (None, ""):
            q = q.filter(getattr(ChangeRequest, key) == filters[key])
    if filters.get("start_date"):
        q = q.filter(ChangeRequest.planned_start_date >= filters["start_date"])
    if filters.get("end_date"):
        q = q.filter(ChangeRequest.planned_start_date <= filters["end_date"])
    if filters.get("q"):
        q = q.filter(ChangeRequest.title.ilike(f"%{filters['q']}%"))
    return q.order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())


def list_pending_approval(tenant_id: int) -> list[ChangeRequest]:
    """Requests awaiting a decision, oldest submission first."""
    return db.session.execute(
        select(ChangeRequest)
        .where(ChangeRequest.tenant_id == tenant_id, ChangeRequest.status == STATUS_PENDING)
        .order_by(ChangeRequest.submitted_at, ChangeRequest.id)
    ).scalars().all()


def list_upcoming_changes(tenant_id: int, days: int = 7, *, now=None) -> list[ChangeRequest]:
    """Approved / In Progress requests planned to start within *days*."""
    now = now or utcnow()
    return db.session.execute(
        select(ChangeRequest)
        .where(
            ChangeRequest.tenant_id == tenant_id,
            ChangeRequest.status.in_((STATUS_APPROVED, STATUS_IN_PROGRESS)),
            ChangeRequest.planned_start_date >= now,
            ChangeRequest.planned_start_date <= now + timedelta(days=days),
        )
        .order_by(ChangeRequest.planned_start_date)
    ).scalars().all()


def get_change_stats(tenant_id: int) -> dict:
    def grouped(column):
        rows = db.session.execute(
            select(column, func.count())
            .where(ChangeRequest.tenant_id == tenant_id)
            .group_by(column)
        ).all()
        return {key: count for key, count in rows if key is not None}

    by_status = grouped(ChangeRequest.status)
    by_risk = grouped(ChangeRequest.risk_level)
    by_impact = grouped(ChangeRequest.impact)
    return {
        "total": sum(by_status.values()),
        "by_status": {status: by_status.get(status, 0) for status in CHANGE_STATUSES},
        "by_risk_level": {level: by_risk.get(level, 0) for level in RISK_LEVELS},
        "by_impact": {level: by_impact.get(level, 0) for level in IMPACT_LEVELS},
        "pending_approval": by_status.get(STATUS_PENDING, 0),
        "in_progress": by_status.get(STATUS_IN_PROGRESS, 0),
    }


# ══════════════════════════════════════════════════════════════════════════════
# Private helpers
# ══════════════════════════════════════════════════════════════════════════════


def _load(tenant_id: int, request_id: int, expected_version: int | None = None) -> ChangeRequest:
    change = get_scoped(ChangeRequest, request_id, tenant_id=tenant_id)
    if expected_version is not None and int(expected_version) != change.version:
        raise ConcurrencyConflictError(change.id, int(expected_version), change.version)
    return change


def _check_transition(change: ChangeRequest, action: str) -> None:
    rule = CHANGE_TRANSITIONS[action]
    if change.status not in rule["from"]:
        raise InvalidTransitionError(change.id, action, change.status)


def touch(change: ChangeRequest, user: str, now) -> None:
    # Always dirties the row so the version column is checked and bumped.
    change.updated_by = user or "system"
    change.updated_at = now


def commit_change(change_id) -> None:
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Optimistic lock conflict", extra={"change_id": change_id})
        raise ConcurrencyConflictError(change_id) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Ledger constraint conflict: %s", exc.orig, extra={"change_id": change_id})
        raise ConcurrencyConflictError(change_id) from exc


def _as_datetime(value):
    return parse_datetime_input(value)
