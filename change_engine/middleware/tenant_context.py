"""
Tenant Context Middleware — enforces tenant isolation on API requests.

Authentication happens upstream of this service; the calling platform
forwards the resolved tenant and user as headers:

    X-Tenant-ID   integer tenant id (required on /api/v1/ except skip paths)
    X-User        acting user identity (optional, defaults to "anonymous")

This middleware:
  1. Verifies the tenant exists and is active
  2. Sets g.tenant_id / g.tenant / g.current_user for route handlers
  3. Every downstream query filters by g.tenant_id

Chain order:
  timing.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, request

from change_engine.models import db
from change_engine.models.tenant import Tenant
from change_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"
USER_HEADER = "X-User"
ANONYMOUS_USER = "anonymous"

# Paths that skip tenant context
TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/scheduler",
    "/static/",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None
        g.current_user = (request.headers.get(USER_HEADER) or ANONYMOUS_USER).strip() or ANONYMOUS_USER

        if not request.path.startswith("/api/v1/"):
            return None
        if request.method == "OPTIONS":
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        raw = request.headers.get(TENANT_HEADER)
        if not raw:
            return api_error(E.VALIDATION_REQUIRED, f"{TENANT_HEADER} header is required", status=400)
        try:
            tenant_id = int(raw)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, f"{TENANT_HEADER} must be an integer", status=400)

        tenant = db.session.get(Tenant, tenant_id)
        # Inactive tenants are indistinguishable from missing ones.
        if tenant is None or not tenant.is_active:
            logger.warning("Request for unknown or inactive tenant", extra={"tenant_id": tenant_id})
            return api_error(E.NOT_FOUND, "Tenant not found")

        g.tenant = tenant
        g.tenant_id = tenant.id
        return None
