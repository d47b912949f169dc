"""
Change Management Risk & Approval Engine
Flask Application Factory.

Usage:
    from change_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from change_engine.config import config
from change_engine.middleware.logging_config import configure_logging
from change_engine.middleware.rate_limiter import init_rate_limits
from change_engine.middleware.tenant_context import init_tenant_context
from change_engine.middleware.timing import init_request_timing
from change_engine.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    import change_engine.models.change_request  # noqa: F401  register mappers
    import change_engine.models.change_settings  # noqa: F401
    import change_engine.models.notification  # noqa: F401
    import change_engine.models.scheduling  # noqa: F401
    import change_engine.models.tenant  # noqa: F401

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Collaborators (number minting, role lookup, notifications) ──────
    from change_engine.services.collaborators import EXTENSION_KEY, Collaborators
    app.extensions[EXTENSION_KEY] = Collaborators()

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_tenant_context(app)
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Blueprints ───────────────────────────────────────────────────────
    from change_engine.blueprints.change_request_bp import change_request_bp
    from change_engine.blueprints.change_settings_bp import change_settings_bp
    from change_engine.blueprints.ops_bp import health_bp, ops_bp

    app.register_blueprint(change_request_bp)
    app.register_blueprint(change_settings_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(ops_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("change_engine.services.scheduled_jobs")  # registers @register_job handlers
    from change_engine.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("change-escalation-sweep")
    @click.option("--tenant-id", type=int, default=None, help="Sweep a single tenant.")
    def change_escalation_sweep_cmd(tenant_id):
        """Apply approval-step timeout actions (run from cron)."""
        from change_engine.services.escalation import EscalationService
        summary = EscalationService.sweep_timeouts(tenant_id=tenant_id)
        click.echo(summary)

    @app.cli.command("init-change-settings")
    @click.argument("tenant_id", type=int)
    def init_change_settings_cmd(tenant_id):
        """Seed the default risk matrix, workflows and categories for a tenant."""
        from change_engine.services.change_settings_service import initialize_defaults
        created = initialize_defaults(tenant_id)
        click.echo({bucket: len(rows) for bucket, rows in created.items()})

    @app.cli.command("register-jobs")
    def register_jobs_cmd():
        """Create ScheduledJob rows for every registered job."""
        created = SchedulerService.ensure_jobs_registered()
        click.echo(f"Registered {len(created)} job(s)")

    return app
