"""
Operational endpoints: health, notification outbox and scheduled jobs.

  GET  /api/v1/health
  GET  /api/v1/notifications?change_request_id=&status=
  POST /api/v1/notifications/<id>/sent
  GET  /api/v1/scheduler/jobs
  POST /api/v1/scheduler/jobs/<name>/run
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy import text

from change_engine.blueprints import current_tenant_id, register_error_handlers
from change_engine.models import db
from change_engine.services import cache_service
from change_engine.services.notification import NotificationService
from change_engine.services.scheduler_service import SchedulerService, get_registered_jobs
from change_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1")
ops_bp = Blueprint("ops", __name__, url_prefix="/api/v1")
register_error_handlers(ops_bp)


@health_bp.route("/health", methods=["GET"])
def health():
    """Liveness plus database and cache reachability."""
    checks = {"cache": cache_service.health_check()}
    try:
        db.session.execute(text("SELECT 1"))
        checks["database"] = {"status": "ok"}
    except Exception as exc:
        logger.exception("Health check database probe failed")
        checks["database"] = {"status": "error", "error": str(exc)}
    healthy = checks["database"]["status"] == "ok"
    return jsonify({"status": "ok" if healthy else "degraded", "checks": checks}), 200 if healthy else 503


# ── Notification outbox ───────────────────────────────────────────────────────


@ops_bp.route("/notifications", methods=["GET"])
def list_notifications():
    limit = min(request.args.get("limit", 50, type=int), 500)
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_tenant(
        current_tenant_id(),
        change_request_id=request.args.get("change_request_id", type=int),
        status=request.args.get("status") or None,
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@ops_bp.route("/notifications/<int:notification_id>/sent", methods=["POST"])
def mark_notification_sent(notification_id):
    notif = NotificationService.mark_sent(current_tenant_id(), notification_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


# ── Scheduled jobs ────────────────────────────────────────────────────────────


@ops_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    jobs = [SchedulerService.get_job_status(name) or {"job_name": name, "registered": True}
            for name in sorted(get_registered_jobs())]
    return jsonify({"items": jobs, "total": len(jobs)})


@ops_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    result = SchedulerService.run_job(job_name)
    return jsonify(result), 200 if result["status"] == "success" else 500
