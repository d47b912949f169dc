"""
Change Request API.

Endpoint groups:
  Collection        GET/POST   /api/v1/changes
  Single request    GET/PUT/DELETE /api/v1/changes/<id>
  Lifecycle         POST /api/v1/changes/<id>/submit|approve|reject|start|complete
  Approval ledger   GET  /api/v1/changes/<id>/approvals
  Approval state    GET  /api/v1/changes/<id>/approval-state
  Dashboards        GET  /api/v1/changes/pending-approval|upcoming|stats
  Risk preview      POST /api/v1/changes/risk-preview

The tenant comes from the X-Tenant-ID header (tenant_context middleware),
the acting user from X-User. Mutations accept the request version in an
If-Match header; when it is absent, optimistic-lock conflicts are retried
up to CHANGE_CONFLICT_RETRIES times.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from change_engine.blueprints import (
    current_tenant_id,
    current_user,
    paginate_query,
    register_error_handlers,
)
from change_engine.core.exceptions import ConcurrencyConflictError, ValidationError
from change_engine.services import change_request_service as changes
from change_engine.utils.helpers import parse_bool, parse_datetime

logger = logging.getLogger(__name__)

change_request_bp = Blueprint("change_request", __name__, url_prefix="/api/v1/changes")
register_error_handlers(change_request_bp)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _expected_version() -> int | None:
    """Version from If-Match (``3``, ``"3"`` or ``W/"3"``) or body ``version``."""
    raw = request.headers.get("If-Match")
    if raw is None:
        raw = (request.get_json(silent=True) or {}).get("version") if request.is_json else None
    if raw in (None, "", "*"):
        return None
    token = str(raw).strip()
    if token.startswith("W/"):
        token = token[2:]
    token = token.strip('"')
    try:
        return int(token)
    except ValueError:
        raise ValidationError("If-Match must carry an integer version",
                              details={"If-Match": raw}) from None


def _with_retry(fn, expected_version):
    """Call *fn*; retry on a lost optimistic lock when no version was pinned."""
    attempts = 1 if expected_version is not None else 1 + int(
        current_app.config.get("CHANGE_CONFLICT_RETRIES", 3))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrencyConflictError:
            if attempt >= attempts:
                raise
            logger.info("Retrying after optimistic lock conflict (attempt %d)", attempt,
                        extra={"tenant_id": current_tenant_id()})
    return None


def _change_response(change, status=200):
    response = jsonify(change.to_dict())
    response.status_code = status
    response.headers["ETag"] = f'"{change.version}"'
    return response


# ═════════════════════════════════════════════════════════════════════════
# Collection
# ═════════════════════════════════════════════════════════════════════════


@change_request_bp.route("", methods=["GET"])
def list_changes():
    """List change requests.

    Query params: status, risk_level, impact, client_id, submitted_by,
    category_id, start_date, end_date, q, limit, offset
    """
    filters = {
        key: request.args.get(key)
        for key in ("status", "risk_level", "impact", "client_id", "submitted_by", "q")
    }
    filters["category_id"] = request.args.get("category_id", type=int)
    filters["start_date"] = parse_datetime(request.args.get("start_date"))
    filters["end_date"] = parse_datetime(request.args.get("end_date"))
    items, total = paginate_query(changes.list_change_requests(current_tenant_id(), filters))
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@change_request_bp.route("", methods=["POST"])
def create_change():
    """Create a change request.

    Body: {title, description?, change_plan?, rollback_plan?, category_id? | category?,
           impact_scores?, risk_level?, impact?, change_type?, is_emergency?,
           planned_start_date?, planned_end_date?, associated_assets?,
           associated_tickets?, client_id?, submitted_by?, save_as_draft?,
           change_number? (idempotent retry)}
    """
    data = _json_body()
    if "save_as_draft" in data:
        data["save_as_draft"] = parse_bool(data["save_as_draft"])
    change = changes.create_change_request(current_tenant_id(), data, created_by=current_user())
    return _change_response(change, 201)


@change_request_bp.route("/risk-preview", methods=["POST"])
def risk_preview():
    """Score and route a prospective request without saving it."""
    data = _json_body()
    result = changes.compute_risk_preview(
        current_tenant_id(),
        category_id=data.get("category_id"),
        impact_scores=data.get("impact_scores") or None,
        risk_level=data.get("risk_level"),
        impact=data.get("impact"),
        change_type=data.get("change_type"),
        is_emergency=parse_bool(data.get("is_emergency")),
    )
    return jsonify(result)


@change_request_bp.route("/pending-approval", methods=["GET"])
def pending_approval():
    items = changes.list_pending_approval(current_tenant_id())
    return jsonify({"items": [c.to_dict() for c in items], "total": len(items)})


@change_request_bp.route("/upcoming", methods=["GET"])
def upcoming():
    """Approved / In Progress changes planned within ``days`` (default 7)."""
    days = request.args.get("days", 7, type=int)
    if days < 0:
        raise ValidationError("days must be a non-negative integer", details={"days": request.args.get("days")})
    items = changes.list_upcoming_changes(current_tenant_id(), days)
    return jsonify({"items": [c.to_dict() for c in items], "total": len(items)})


@change_request_bp.route("/stats", methods=["GET"])
def stats():
    return jsonify(changes.get_change_stats(current_tenant_id()))


# ═════════════════════════════════════════════════════════════════════════
# Single request
# ═════════════════════════════════════════════════════════════════════════


@change_request_bp.route("/<int:change_id>", methods=["GET"])
def get_change(change_id):
    change = changes.get_change_request(current_tenant_id(), change_id)
    return _change_response(change)


@change_request_bp.route("/<int:change_id>", methods=["PUT", "PATCH"])
def update_change(change_id):
    data = _json_body()
    expected = _expected_version()
    change = _with_retry(
        lambda: changes.update_change_request(current_tenant_id(), change_id, data, current_user(),
                                              expected_version=expected),
        expected,
    )
    return _change_response(change)


@change_request_bp.route("/<int:change_id>", methods=["DELETE"])
def delete_change(change_id):
    changes.delete_change_request(current_tenant_id(), change_id)
    return jsonify({"deleted": True, "id": change_id})


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════


@change_request_bp.route("/<int:change_id>/submit", methods=["POST"])
def submit_change(change_id):
    expected = _expected_version()
    change = _with_retry(
        lambda: changes.submit_change_request(current_tenant_id(), change_id, current_user(),
                                              expected_version=expected),
        expected,
    )
    return _change_response(change)


@change_request_bp.route("/<int:change_id>/approve", methods=["POST"])
def approve_change(change_id):
    """Record an approval for the current step.

    Body: {approver?, reason?}. approver defaults to the X-User identity.
    """
    data = _json_body()
    approver = data.get("approver") or current_user()
    expected = _expected_version()
    change = _with_retry(
        lambda: changes.approve(current_tenant_id(), change_id, approver, data.get("reason"),
                                expected_version=expected),
        expected,
    )
    return _change_response(change)


@change_request_bp.route("/<int:change_id>/reject", methods=["POST"])
def reject_change(change_id):
    """Reject the request. Body: {reason, rejecter?}."""
    data = _json_body()
    rejecter = data.get("rejecter") or current_user()
    expected = _expected_version()
    change = _with_retry(
        lambda: changes.reject(current_tenant_id(), change_id, rejecter, data.get("reason"),
                               expected_version=expected),
        expected,
    )
    return _change_response(change)


@change_request_bp.route("/<int:change_id>/start", methods=["POST"])
def start_change(change_id):
    expected = _expected_version()
    change = _with_retry(
        lambda: changes.start_change_request(current_tenant_id(), change_id, current_user(),
                                             expected_version=expected),
        expected,
    )
    return _change_response(change)


@change_request_bp.route("/<int:change_id>/complete", methods=["POST"])
def complete_change(change_id):
    expected = _expected_version()
    change = _with_retry(
        lambda: changes.complete_change_request(current_tenant_id(), change_id, current_user(),
                                                expected_version=expected),
        expected,
    )
    return _change_response(change)


# ═════════════════════════════════════════════════════════════════════════
# Ledger
# ═════════════════════════════════════════════════════════════════════════


@change_request_bp.route("/<int:change_id>/approvals", methods=["GET"])
def approval_ledger(change_id):
    records = changes.get_approval_ledger(current_tenant_id(), change_id)
    return jsonify({"items": [r.to_dict() for r in records], "total": len(records)})


@change_request_bp.route("/<int:change_id>/approval-state", methods=["GET"])
def approval_state(change_id):
    return jsonify(changes.get_approval_state(current_tenant_id(), change_id))
