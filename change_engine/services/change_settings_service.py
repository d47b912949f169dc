"""
Change Category Registry — risk matrices, categories and approval workflows.

Tenant-scoped CRUD for the three reference-data kinds plus the read-only
projections used when a change request is created. Every write commits,
invalidates the tenant's cached projections and logs. The approval flow
never writes here.

Projections degrade gracefully: a tenant without reference data gets an
empty list or None, never an exception.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from change_engine.core.exceptions import (
    ConfigurationError,
    ConflictError,
    DuplicateNameError,
    ValidationError,
)
from change_engine.models import db
from change_engine.models.change_settings import (
    CALCULATION_METHODS,
    IMPACT_LEVELS,
    NOTIFICATION_CHANNELS,
    NOTIFICATION_TIMINGS,
    RISK_LEVELS,
    SETTING_KINDS,
    TIMEOUT_ACTIONS,
    ApprovalWorkflow,
    ChangeCategory,
    RiskMatrix,
)
from change_engine.services import cache_service
from change_engine.services.approval_engine import parse_condition
from change_engine.services.change_settings_defaults import (
    DEFAULT_CATEGORIES,
    DEFAULT_RISK_MATRIX,
    DEFAULT_WORKFLOWS,
)
from change_engine.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from change_engine.services.risk_matrix import compile_formula

logger = logging.getLogger(__name__)

KIND_MODELS = {
    "risk_matrix": RiskMatrix,
    "change_category": ChangeCategory,
    "approval_workflow": ApprovalWorkflow,
}

_RESOURCE_NAMES = {
    "risk_matrix": "RiskMatrix",
    "change_category": "ChangeCategory",
    "approval_workflow": "ApprovalWorkflow",
}

# Writable attributes per kind.
_FIELDS = {
    "risk_matrix": (
        "name", "description", "risk_levels", "impact_categories",
        "calculation_method", "custom_formula", "is_active", "is_default",
    ),
    "change_category": (
        "name", "description", "color", "icon", "default_risk_level",
        "default_impact_level", "requires_approval", "requires_testing",
        "requires_rollback", "requires_documentation", "requires_communication",
        "default_maintenance_window", "approval_workflow_id", "notifications",
        "is_active", "is_default", "sort_order",
    ),
    "approval_workflow": (
        "name", "description", "trigger_conditions", "approval_steps",
        "escalation_rules", "priority", "is_active", "is_default",
    ),
}

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_CATEGORY_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _model_for(kind):
    if kind not in KIND_MODELS:
        raise ValidationError(
            f"Unknown settings type {kind!r}",
            details={"type": f"must be one of {', '.join(SETTING_KINDS)}"},
        )
    return KIND_MODELS[kind]


def _ordering(model):
    if model is ChangeCategory:
        return (ChangeCategory.sort_order, ChangeCategory.name)
    if model is ApprovalWorkflow:
        return (ApprovalWorkflow.priority, ApprovalWorkflow.id)
    return (model.id,)


# ══════════════════════════════════════════════════════════════════════════════
# CRUD
# ══════════════════════════════════════════════════════════════════════════════


def list_settings(tenant_id: int, kind: str | None = None, active_only: bool = False) -> list[dict]:
    """All settings of a tenant, optionally narrowed to one kind."""
    kinds = [kind] if kind else list(SETTING_KINDS)
    result = []
    for k in kinds:
        model = _model_for(k)
        stmt = select(model).where(model.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(model.is_active.is_(True))
        stmt = stmt.order_by(*_ordering(model))
        result.extend(row.to_dict() for row in db.session.execute(stmt).scalars())
    return result


def get_setting(tenant_id: int, kind: str, setting_id: int):
    """Return the ORM row; NotFoundError for other tenants' ids."""
    return get_scoped(_model_for(kind), setting_id, tenant_id=tenant_id)


def create_setting(tenant_id: int, kind: str, data: dict, user: str = "system") -> dict:
    """Validate and persist a new settings row.

    Raises:
        ValidationError: Payload fails the kind's rules.
        DuplicateNameError: Name already used by the same kind in the tenant.
    """
    model = _model_for(kind)
    clean = _validate(tenant_id, kind, data, partial=False)
    _ensure_unique_name(tenant_id, kind, clean["name"])

    row = model(tenant_id=tenant_id, created_by=user, updated_by=user, **clean)
    db.session.add(row)
    if clean.get("is_default"):
        _clear_other_defaults(tenant_id, model, keep=row)
    _commit(tenant_id, kind, clean["name"])

    logger.info(
        "Change setting created",
        extra={"tenant_id": tenant_id, "kind": kind, "setting_id": row.id, "setting_name": row.name},
    )
    return row.to_dict()


def update_setting(tenant_id: int, kind: str, setting_id: int, data: dict, user: str = "system") -> dict:
    """Partial update. Omitted fields keep their current value."""
    model = _model_for(kind)
    row = get_scoped(model, setting_id, tenant_id=tenant_id)
    clean = _validate(tenant_id, kind, data, partial=True, current=row)
    if "name" in clean and clean["name"] != row.name:
        _ensure_unique_name(tenant_id, kind, clean["name"], exclude_id=row.id)

    for key, value in clean.items():
        setattr(row, key, value)
    row.updated_by = user
    if clean.get("is_default"):
        _clear_other_defaults(tenant_id, model, keep=row)
    _commit(tenant_id, kind, row.name)

    logger.info(
        "Change setting updated",
        extra={"tenant_id": tenant_id, "kind": kind, "setting_id": row.id, "fields": sorted(clean)},
    )
    return row.to_dict()


def delete_setting(tenant_id: int, kind: str, setting_id: int) -> None:
    """Delete a settings row.

    Requests keep their snapshots; categories pointing at a deleted
    workflow fall back to trigger matching.
    """
    model = _model_for(kind)
    row = get_scoped(model, setting_id, tenant_id=tenant_id)
    if model is ApprovalWorkflow:
        ChangeCategory.query_for_tenant(tenant_id).filter_by(approval_workflow_id=row.id).update(
            {"approval_workflow_id": None}, synchronize_session="fetch",
        )
    db.session.delete(row)
    _commit(tenant_id, kind, row.name)
    logger.info("Change setting deleted", extra={"tenant_id": tenant_id, "kind": kind, "setting_id": setting_id})


# ══════════════════════════════════════════════════════════════════════════════
# Change-creation projections (cached per tenant + kind)
# ══════════════════════════════════════════════════════════════════════════════


def get_categories_for_change_creation(tenant_id: int) -> list[dict]:
    """Active categories, each complete enough to pre-populate a request."""
    def load():
        return list_settings(tenant_id, "change_category", active_only=True)
    return cache_service.get_tenant_settings(tenant_id, "categories", load) or []


def get_workflows_for_change_creation(tenant_id: int) -> list[dict]:
    """Active workflows in evaluation order (priority, id)."""
    def load():
        return list_settings(tenant_id, "approval_workflow", active_only=True)
    return cache_service.get_tenant_settings(tenant_id, "workflows", load) or []


def get_risk_matrix_for_change_creation(tenant_id: int) -> dict | None:
    """The tenant's active default matrix, or None."""
    def load():
        rows = db.session.execute(
            select(RiskMatrix)
            .where(
                RiskMatrix.tenant_id == tenant_id,
                RiskMatrix.is_active.is_(True),
                RiskMatrix.is_default.is_(True),
            )
            .order_by(RiskMatrix.id)
        ).scalars().all()
        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(
                "Several active default risk matrices; using the oldest",
                extra={"tenant_id": tenant_id, "matrix_ids": [r.id for r in rows]},
            )
        return rows[0].to_dict()
    return cache_service.get_tenant_settings(tenant_id, "risk_matrix", load)


def get_category_for_change_creation(tenant_id: int, category_id) -> dict | None:
    if category_id is None:
        return None
    for category in get_categories_for_change_creation(tenant_id):
        if str(category["id"]) == str(category_id):
            return category
    return None


# ══════════════════════════════════════════════════════════════════════════════
# Defaults & stats
# ══════════════════════════════════════════════════════════════════════════════


def initialize_defaults(tenant_id: int, user: str = "system") -> dict:
    """Seed the starter matrix, workflows and categories.

    Raises:
        ConflictError: The tenant already has change-management settings.
    """
    existing = sum(
        db.session.execute(
            select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
        ).scalar_one()
        for model in KIND_MODELS.values()
    )
    if existing:
        raise ConflictError("ChangeSettings", "tenant_id", str(tenant_id))

    created = {"risk_matrices": [], "workflows": [], "categories": []}
    for bucket, kind, payloads in (
        ("risk_matrices", "risk_matrix", [DEFAULT_RISK_MATRIX]),
        ("workflows", "approval_workflow", DEFAULT_WORKFLOWS),
        ("categories", "change_category", DEFAULT_CATEGORIES),
    ):
        model = KIND_MODELS[kind]
        for payload in payloads:
            clean = _validate(tenant_id, kind, payload, partial=False)
            row = model(tenant_id=tenant_id, created_by=user, updated_by=user, **clean)
            db.session.add(row)
            created[bucket].append(row)
    _commit(tenant_id, "defaults", None)

    logger.info(
        "Change settings defaults initialised",
        extra={"tenant_id": tenant_id, "user": user},
    )
    return {bucket: [r.to_dict() for r in rows] for bucket, rows in created.items()}


def get_settings_stats(tenant_id: int) -> dict:
    workflows = ApprovalWorkflow.query_for_tenant(tenant_id).all()
    matrices = RiskMatrix.query_for_tenant(tenant_id).all()
    categories = ChangeCategory.query_for_tenant(tenant_id).all()

    step_counts = [len(w.approval_steps or []) for w in workflows]
    avg_steps = round(sum(step_counts) / len(step_counts), 2) if step_counts else 0
    return {
        "total_workflows": len(workflows),
        "active_workflows": sum(1 for w in workflows if w.is_active),
        "total_risk_matrices": len(matrices),
        "active_risk_matrices": sum(1 for m in matrices if m.is_active),
        "total_categories": len(categories),
        "active_categories": sum(1 for c in categories if c.is_active),
        "avg_approval_steps": avg_steps,
    }


# ══════════════════════════════════════════════════════════════════════════════
# Private helpers
# ══════════════════════════════════════════════════════════════════════════════


def _ensure_unique_name(tenant_id, kind, name, exclude_id=None):
    model = KIND_MODELS[kind]
    stmt = select(model.id).where(model.tenant_id == tenant_id, model.name == name)
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise DuplicateNameError(_RESOURCE_NAMES[kind], name, tenant_id)


def _clear_other_defaults(tenant_id, model, keep):
    db.session.flush()
    for other in model.query_for_tenant(tenant_id).filter(model.is_default.is_(True), model.id != keep.id):
        other.is_default = False


def _commit(tenant_id, kind, name):
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on settings commit: %s", exc.orig, extra={"tenant_id": tenant_id})
        if name is not None and kind in _RESOURCE_NAMES:
            raise DuplicateNameError(_RESOURCE_NAMES[kind], name, tenant_id) from exc
        raise ConflictError("ChangeSettings", "tenant_id", str(tenant_id)) from exc
    cache_service.invalidate_tenant_settings(tenant_id)


# ── Validation ───────────────────────────────────────────────────────────────


def _validate(tenant_id, kind, data, *, partial, current=None) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    clean = {k: data[k] for k in _FIELDS[kind] if k in data}
    errors: dict[str, str] = {}

    if not partial or "name" in clean:
        name = str(clean.get("name") or "").strip()
        if not name:
            errors["name"] = "name is required"
        elif len(name) > 200:
            errors["name"] = "name must be at most 200 characters"
        clean["name"] = name

    if kind == "risk_matrix":
        _validate_matrix(tenant_id, clean, errors, partial, current)
    elif kind == "change_category":
        _validate_category(tenant_id, clean, errors)
    else:
        _validate_workflow(clean, errors, partial)

    if errors:
        raise ValidationError(f"Invalid {kind.replace('_', ' ')}", details=errors)
    return clean


def _validate_matrix(tenant_id, clean, errors, partial, current):
    method = clean.get("calculation_method", current.calculation_method if current else "weighted_average")
    if method not in CALCULATION_METHODS:
        errors["calculation_method"] = f"must be one of {', '.join(sorted(CALCULATION_METHODS))}"
    if not partial:
        clean.setdefault("calculation_method", method)

    if "risk_levels" in clean or not partial:
        levels = clean.get("risk_levels") or []
        seen = set()
        for i, entry in enumerate(levels):
            if not isinstance(entry, dict) or entry.get("level") not in RISK_LEVELS:
                errors[f"risk_levels[{i}].level"] = f"must be one of {', '.join(RISK_LEVELS)}"
                continue
            if entry["level"] in seen:
                errors[f"risk_levels[{i}].level"] = "duplicate level"
            seen.add(entry["level"])
            approvers = entry.get("required_approvers", 0)
            if not isinstance(approvers, int) or isinstance(approvers, bool) or approvers < 0:
                errors[f"risk_levels[{i}].required_approvers"] = "must be an integer ≥ 0"
        if not levels:
            errors["risk_levels"] = "at least one risk level is required"
        clean["risk_levels"] = levels

    if "impact_categories" in clean or not partial:
        categories = clean.get("impact_categories") or []
        keys = set()
        for i, entry in enumerate(categories):
            key = entry.get("category") if isinstance(entry, dict) else None
            if not key or not _CATEGORY_KEY.match(str(key)):
                errors[f"impact_categories[{i}].category"] = "must be an identifier (letters, digits, _)"
                continue
            if key in keys:
                errors[f"impact_categories[{i}].category"] = "duplicate category"
            keys.add(key)
            weight = entry.get("weight", 0)
            if not _is_number(weight) or not 0 <= weight <= 1:
                errors[f"impact_categories[{i}].weight"] = "must be a number between 0 and 1"
            for level, value in (entry.get("thresholds") or {}).items():
                if level not in RISK_LEVELS or not _is_number(value):
                    errors[f"impact_categories[{i}].thresholds.{level}"] = "must be a numeric threshold for a known level"
        if categories and method == "weighted_average" and not errors:
            total = sum(entry.get("weight", 0) for entry in categories)
            if abs(total - 1.0) > 1e-6:
                logger.warning(
                    "Impact category weights do not sum to 1",
                    extra={"tenant_id": tenant_id, "weight_total": round(total, 4)},
                )
        clean["impact_categories"] = categories

    if method == "custom" and "calculation_method" not in errors:
        formula = clean.get("custom_formula", current.custom_formula if current else None)
        names = [c.get("category") for c in clean.get(
            "impact_categories", current.impact_categories if current else []) or []]
        try:
            compile_formula(formula, names)
        except ConfigurationError as exc:
            errors["custom_formula"] = str(exc)


def _validate_category(tenant_id, clean, errors):
    for key in ("default_risk_level", "default_impact_level"):
        if key in clean and clean[key] not in IMPACT_LEVELS:
            errors[key] = f"must be one of {', '.join(IMPACT_LEVELS)}"

    window = clean.get("default_maintenance_window")
    if window is not None:
        if not isinstance(window, dict):
            errors["default_maintenance_window"] = "must be an object"
        else:
            duration = window.get("duration_minutes", 0)
            if not _is_number(duration) or duration < 0:
                errors["default_maintenance_window.duration_minutes"] = "must be a number ≥ 0"
            for t in window.get("preferred_times") or []:
                if not _HHMM.match(str(t)):
                    errors["default_maintenance_window.preferred_times"] = f"invalid time {t!r}; use HH:MM"
            for period in window.get("blackout_periods") or []:
                if not _HHMM.match(str(period.get("start", ""))) or not _HHMM.match(str(period.get("end", ""))):
                    errors["default_maintenance_window.blackout_periods"] = "start/end must be HH:MM"

    notifications = clean.get("notifications")
    if notifications is not None:
        if not isinstance(notifications, dict):
            errors["notifications"] = "must be an object"
        else:
            bad_channels = set(notifications.get("channels") or []) - NOTIFICATION_CHANNELS
            if bad_channels:
                errors["notifications.channels"] = f"unknown channel(s): {', '.join(sorted(bad_channels))}"
            bad_timing = set(notifications.get("timing") or []) - NOTIFICATION_TIMINGS
            if bad_timing:
                errors["notifications.timing"] = f"unknown timing(s): {', '.join(sorted(bad_timing))}"

    workflow_id = clean.get("approval_workflow_id")
    if workflow_id is not None:
        if get_scoped_or_none(ApprovalWorkflow, workflow_id, tenant_id=tenant_id) is None:
            errors["approval_workflow_id"] = "approval workflow not found"

    if "sort_order" in clean and not isinstance(clean["sort_order"], int):
        errors["sort_order"] = "must be an integer"


def _validate_workflow(clean, errors, partial):
    conditions = clean.get("trigger_conditions")
    if conditions is not None:
        if not isinstance(conditions, dict):
            errors["trigger_conditions"] = "must be an object"
        else:
            for key, allowed in (("risk_level", RISK_LEVELS), ("impact_level", IMPACT_LEVELS)):
                values = conditions.get(key)
                if values is not None and (not isinstance(values, list) or set(values) - set(allowed)):
                    errors[f"trigger_conditions.{key}"] = f"must be a list drawn from {', '.join(allowed)}"
            if conditions.get("change_types") is not None and not isinstance(conditions["change_types"], list):
                errors["trigger_conditions.change_types"] = "must be a list"
            for key in ("business_hours", "emergency_override"):
                if conditions.get(key) is not None and not isinstance(conditions[key], bool):
                    errors[f"trigger_conditions.{key}"] = "must be true, false or omitted"

    if "approval_steps" in clean or not partial:
        steps = clean.get("approval_steps") or []
        if not steps:
            errors["approval_steps"] = "at least one approval step is required"
        numbers = set()
        for i, step in enumerate(steps):
            if not isinstance(step, dict):
                errors[f"approval_steps[{i}]"] = "must be an object"
                continue
            number = step.get("step_number")
            if not isinstance(number, int) or isinstance(number, bool) or number < 1:
                errors[f"approval_steps[{i}].step_number"] = "must be a positive integer"
            elif number in numbers:
                errors[f"approval_steps[{i}].step_number"] = "duplicate step number"
            numbers.add(number)
            required = step.get("required_approvers", 1)
            if not isinstance(required, int) or isinstance(required, bool) or required < 1:
                errors[f"approval_steps[{i}].required_approvers"] = "must be an integer ≥ 1"
            timeout = step.get("timeout_hours")
            if timeout is not None and (not _is_number(timeout) or timeout <= 0):
                errors[f"approval_steps[{i}].timeout_hours"] = "must be a positive number"
            skip = step.get("conditional_skip")
            if skip:
                try:
                    parse_condition(skip.get("condition"))
                except ConfigurationError as exc:
                    errors[f"approval_steps[{i}].conditional_skip"] = str(exc)
        clean["approval_steps"] = sorted(
            steps, key=lambda s: s.get("step_number") if isinstance(s, dict) and isinstance(s.get("step_number"), int) else 0
        )

    rules = clean.get("escalation_rules")
    if rules is not None:
        if not isinstance(rules, dict):
            errors["escalation_rules"] = "must be an object"
        else:
            if rules.get("timeout_action") is not None and rules["timeout_action"] not in TIMEOUT_ACTIONS:
                errors["escalation_rules.timeout_action"] = f"must be one of {', '.join(sorted(TIMEOUT_ACTIONS))}"
            frequency = rules.get("notification_frequency")
            if frequency is not None and (not _is_number(frequency) or frequency <= 0):
                errors["escalation_rules.notification_frequency"] = "must be a positive number of hours"

    if "priority" in clean and (not isinstance(clean["priority"], int) or isinstance(clean["priority"], bool)):
        errors["priority"] = "must be an integer"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
