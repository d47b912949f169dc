"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. Callers never need to
import from a service module to catch a business error.

Usage:
    from change_engine.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="ChangeRequest", resource_id=42, tenant_id=7)
    raise InvalidTransitionError(42, "approve", "Rejected")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "ChangeRequest", "ChangeCategory").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 400 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate existing state.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DuplicateNameError(ConflictError):
    """A category / workflow / risk matrix name is already used in the tenant."""

    def __init__(self, resource: str, name: str, tenant_id: int | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(resource, "name", name)


class ConfigurationError(Exception):
    """Reference data is unusable: bad custom formula, malformed skip rule, ...

    Raised only where silently defaulting would produce a wrong risk score or
    a wrong route. Maps to HTTP 422 with code ERR_CONFIGURATION.
    """

    def __init__(self, message: str, *, resource: str | None = None, resource_id=None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message)


class InvalidTransitionError(Exception):
    """A lifecycle action is not allowed from the request's current state.

    Covers approve/reject on a terminal request, approving a step that is
    already satisfied, editing a terminal request, etc. Always carries the
    offending change request id.
    """

    def __init__(self, request_id, action: str, current: str, reason: str | None = None) -> None:
        self.request_id = request_id
        self.action = action
        self.current_status = current
        self.reason = reason
        msg = f"Cannot '{action}' change request {request_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConcurrencyConflictError(Exception):
    """Optimistic-lock failure: another writer changed the request first.

    The service rolls back and raises; retrying is the caller's decision.
    """

    def __init__(self, request_id, expected_version: int | None = None,
                 actual_version: int | None = None) -> None:
        self.request_id = request_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Change request {request_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)
