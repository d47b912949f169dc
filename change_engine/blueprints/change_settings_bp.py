"""
Change Settings API — risk matrices, categories and approval workflows.

Endpoint groups:
  Listing             GET  /api/v1/change-settings?type=<kind>&active_only=
  CRUD                POST /api/v1/change-settings/<kind>
                      GET/PUT/DELETE /api/v1/change-settings/<kind>/<id>
  Creation projections GET /api/v1/change-settings/for-change-creation/categories
                       GET /api/v1/change-settings/for-change-creation/workflows
                       GET /api/v1/change-settings/for-change-creation/risk-matrix
  Starter data        POST /api/v1/change-settings/initialize
  Stats               GET  /api/v1/change-settings/stats

<kind> is one of approval_workflow, risk_matrix, change_category.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from change_engine.blueprints import current_tenant_id, current_user, register_error_handlers
from change_engine.core.exceptions import ValidationError
from change_engine.services import change_settings_service as svc
from change_engine.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

change_settings_bp = Blueprint("change_settings", __name__, url_prefix="/api/v1/change-settings")
register_error_handlers(change_settings_bp)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Listing & CRUD ────────────────────────────────────────────────────────────


@change_settings_bp.route("", methods=["GET"])
def list_settings():
    items = svc.list_settings(
        current_tenant_id(),
        request.args.get("type") or None,
        active_only=parse_bool(request.args.get("active_only")),
    )
    return jsonify({"items": items, "total": len(items)})


@change_settings_bp.route("/<kind>", methods=["POST"])
def create_setting(kind):
    row = svc.create_setting(current_tenant_id(), kind, _json_body(), current_user())
    return jsonify(row), 201


@change_settings_bp.route("/<kind>/<int:setting_id>", methods=["GET"])
def get_setting(kind, setting_id):
    return jsonify(svc.get_setting(current_tenant_id(), kind, setting_id).to_dict())


@change_settings_bp.route("/<kind>/<int:setting_id>", methods=["PUT", "PATCH"])
def update_setting(kind, setting_id):
    row = svc.update_setting(current_tenant_id(), kind, setting_id, _json_body(), current_user())
    return jsonify(row)


@change_settings_bp.route("/<kind>/<int:setting_id>", methods=["DELETE"])
def delete_setting(kind, setting_id):
    svc.delete_setting(current_tenant_id(), kind, setting_id)
    return jsonify({"deleted": True, "id": setting_id})


# ── Projections used by the change-request form ───────────────────────────────


@change_settings_bp.route("/for-change-creation/categories", methods=["GET"])
def categories_for_creation():
    return jsonify({"items": svc.get_categories_for_change_creation(current_tenant_id())})


@change_settings_bp.route("/for-change-creation/workflows", methods=["GET"])
def workflows_for_creation():
    return jsonify({"items": svc.get_workflows_for_change_creation(current_tenant_id())})


@change_settings_bp.route("/for-change-creation/risk-matrix", methods=["GET"])
def risk_matrix_for_creation():
    return jsonify({"risk_matrix": svc.get_risk_matrix_for_change_creation(current_tenant_id())})


# ── Defaults & stats ──────────────────────────────────────────────────────────


@change_settings_bp.route("/initialize", methods=["POST"])
def initialize_defaults():
    """Seed starter settings. 409 when the tenant already has settings."""
    created = svc.initialize_defaults(current_tenant_id(), current_user())
    return jsonify(created), 201


@change_settings_bp.route("/stats", methods=["GET"])
def settings_stats():
    return jsonify(svc.get_settings_stats(current_tenant_id()))
