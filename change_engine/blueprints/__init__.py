"""
Change Management Risk & Approval Engine
Blueprint registry and shared view helpers.
"""

from flask import g, request

from change_engine.core.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from change_engine.utils.errors import E, api_error


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def current_tenant_id() -> int:
    """Tenant resolved by the tenant-context middleware."""
    return g.tenant_id


def current_user() -> str:
    return getattr(g, "current_user", None) or "anonymous"


def register_error_handlers(bp):
    """Map domain exceptions to the standard error envelope on *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConfigurationError)
    def _handle_configuration(error: ConfigurationError):
        details = {"resource": error.resource, "resource_id": error.resource_id}
        return api_error(E.CONFIGURATION, str(error),
                         details={k: v for k, v in details.items() if v is not None})

    @bp.errorhandler(ConcurrencyConflictError)
    def _handle_concurrency(error: ConcurrencyConflictError):
        details = {
            "request_id": error.request_id,
            "expected_version": error.expected_version,
            "actual_version": error.actual_version,
        }
        return api_error(E.CONFLICT_CONCURRENT, str(error),
                         details={k: v for k, v in details.items() if v is not None})

    @bp.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        return api_error(E.CONFLICT_STATE, str(error), details={
            "request_id": error.request_id,
            "action": error.action,
            "current_status": error.current_status,
        })

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error),
                         details={"field": error.field, "value": error.value})

    return bp
