"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in change_engine/__init__.py with no
default limits; this module applies granular limits per route category.

Tenant-aware keys: requests are counted per tenant when X-Tenant-ID
resolved, otherwise per remote address.

Plan-based API quotas:
    - trial:        100 requests/minute
    - starter:      300 requests/minute
    - professional: 600 requests/minute
    - enterprise:   5000 requests/minute

Usage:
    from change_engine.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

PLAN_RATE_LIMITS = {
    "trial": "100/minute",
    "starter": "300/minute",
    "professional": "600/minute",
    "enterprise": "5000/minute",
}

DEFAULT_PLAN_LIMIT = "100/minute"


def tenant_rate_limit_key():
    """Dynamic rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def tenant_plan_limit():
    """Return the rate limit string for the current tenant's plan."""
    tenant = getattr(g, "tenant", None)
    if tenant:
        plan = getattr(tenant, "plan", "trial") or "trial"
        return PLAN_RATE_LIMITS.get(plan, DEFAULT_PLAN_LIMIT)
    return DEFAULT_PLAN_LIMIT


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Change requests:   tenant plan limit
        - Change settings:   60/minute (admin writes)
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("change_request")
    if bp:
        limiter.limit(tenant_plan_limit, key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("change_settings")
    if bp:
        limiter.limit("60/minute", key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: changes per tenant plan, settings 60/min")
