"""Category registry: risk matrices, categories and approval workflows."""

import logging

import pytest

from change_engine.core.exceptions import (
    ConflictError,
    DuplicateNameError,
    NotFoundError,
    ValidationError,
)
from change_engine.models import db
from change_engine.models.change_settings import ChangeCategory
from change_engine.services import change_settings_service as settings


def _workflow(name="Ops", **extra):
    payload = {
        "name": name,
        "trigger_conditions": {"risk_level": ["high"]},
        "approval_steps": [{"step_number": 1, "name": "Lead", "required_approvers": 1}],
        "priority": 5,
    }
    payload.update(extra)
    return payload


# ── Defaults ─────────────────────────────────────────────────────────────


def test_initialize_defaults_seeds_every_kind(tenant):
    created = settings.initialize_defaults(tenant.id, user="admin")
    assert len(created["risk_matrices"]) == 1
    assert [w["name"] for w in created["workflows"]] == [
        "Standard Approval Workflow", "Emergency Change Workflow",
    ]
    assert [c["name"] for c in created["categories"]] == [
        "Infrastructure", "Application", "Security", "Emergency",
    ]
    assert created["categories"][0]["created_by"] == "admin"


def test_initialize_defaults_refuses_second_run(seeded_tenant):
    with pytest.raises(ConflictError):
        settings.initialize_defaults(seeded_tenant.id)


def test_stats(seeded_tenant):
    stats = settings.get_settings_stats(seeded_tenant.id)
    assert stats["total_workflows"] == 2
    assert stats["active_categories"] == 4
    assert stats["total_risk_matrices"] == 1
    assert stats["avg_approval_steps"] == 1.5


# ── CRUD ─────────────────────────────────────────────────────────────────


def test_list_orders_workflows_by_priority(seeded_tenant):
    names = [w["name"] for w in settings.list_settings(seeded_tenant.id, "approval_workflow")]
    assert names == ["Emergency Change Workflow", "Standard Approval Workflow"]


def test_unknown_kind(tenant):
    with pytest.raises(ValidationError) as exc:
        settings.list_settings(tenant.id, "runbook")
    assert "type" in exc.value.details


def test_duplicate_name_within_kind(tenant):
    settings.create_setting(tenant.id, "approval_workflow", _workflow())
    with pytest.raises(DuplicateNameError):
        settings.create_setting(tenant.id, "approval_workflow", _workflow())
    # same name, different kind
    settings.create_setting(tenant.id, "change_category", {"name": "Ops"})


def test_same_name_in_another_tenant(tenant, other_tenant):
    settings.create_setting(tenant.id, "change_category", {"name": "Network"})
    settings.create_setting(other_tenant.id, "change_category", {"name": "Network"})
    assert len(settings.list_settings(other_tenant.id, "change_category")) == 1


def test_rename_to_existing_name(tenant):
    settings.create_setting(tenant.id, "change_category", {"name": "Network"})
    storage = settings.create_setting(tenant.id, "change_category", {"name": "Storage"})
    with pytest.raises(DuplicateNameError):
        settings.update_setting(tenant.id, "change_category", storage["id"], {"name": "Network"})


def test_other_tenant_ids_are_not_found(tenant, other_tenant):
    row = settings.create_setting(tenant.id, "change_category", {"name": "Network"})
    with pytest.raises(NotFoundError):
        settings.get_setting(other_tenant.id, "change_category", row["id"])
    with pytest.raises(NotFoundError):
        settings.delete_setting(other_tenant.id, "change_category", row["id"])


def test_partial_update_keeps_other_fields(seeded_tenant):
    workflow = settings.list_settings(seeded_tenant.id, "approval_workflow")[1]
    updated = settings.update_setting(seeded_tenant.id, "approval_workflow", workflow["id"],
                                      {"priority": 9}, user="bob")
    assert updated["priority"] == 9
    assert updated["approval_steps"] == workflow["approval_steps"]
    assert updated["updated_by"] == "bob"


def test_single_default_per_kind(tenant):
    first = settings.create_setting(tenant.id, "change_category", {"name": "A", "is_default": True})
    second = settings.create_setting(tenant.id, "change_category", {"name": "B", "is_default": True})
    assert settings.get_setting(tenant.id, "change_category", first["id"]).is_default is False
    assert settings.get_setting(tenant.id, "change_category", second["id"]).is_default is True


def test_deleting_workflow_detaches_categories(tenant):
    workflow = settings.create_setting(tenant.id, "approval_workflow", _workflow())
    category = settings.create_setting(tenant.id, "change_category",
                                       {"name": "Network", "approval_workflow_id": workflow["id"]})
    settings.delete_setting(tenant.id, "approval_workflow", workflow["id"])
    row = settings.get_setting(tenant.id, "change_category", category["id"])
    assert row.approval_workflow_id is None


# ── Validation ───────────────────────────────────────────────────────────


def test_workflow_validation_details(tenant):
    with pytest.raises(ValidationError) as exc:
        settings.create_setting(tenant.id, "approval_workflow", {
            "name": "Broken",
            "trigger_conditions": {"risk_level": ["extreme"], "business_hours": "yes"},
            "approval_steps": [
                {"step_number": 1, "required_approvers": 0},
                {"step_number": 1, "timeout_hours": -2},
            ],
            "escalation_rules": {"timeout_action": "page_everyone"},
        })
    details = exc.value.details
    assert "trigger_conditions.risk_level" in details
    assert "trigger_conditions.business_hours" in details
    assert "approval_steps[0].required_approvers" in details
    assert "approval_steps[1].step_number" in details
    assert "approval_steps[1].timeout_hours" in details
    assert "escalation_rules.timeout_action" in details


def test_workflow_needs_steps(tenant):
    with pytest.raises(ValidationError) as exc:
        settings.create_setting(tenant.id, "approval_workflow", {"name": "Empty"})
    assert "approval_steps" in exc.value.details


def test_malformed_skip_condition_is_rejected_on_save(tenant):
    with pytest.raises(ValidationError) as exc:
        settings.create_setting(tenant.id, "approval_workflow", _workflow(approval_steps=[
            {"step_number": 1, "name": "CAB", "conditional_skip": {"condition": "owner == bob"}},
        ]))
    assert "approval_steps[0].conditional_skip" in exc.value.details


def test_matrix_validation(tenant):
    with pytest.raises(ValidationError) as exc:
        settings.create_setting(tenant.id, "risk_matrix", {
            "name": "Bad",
            "calculation_method": "custom",
            "custom_formula": "__import__('os')",
            "risk_levels": [{"level": "low"}, {"level": "low"}],
            "impact_categories": [{"category": "cost", "weight": 3}],
        })
    details = exc.value.details
    assert details["risk_levels[1].level"] == "duplicate level"
    assert "impact_categories[0].weight" in details
    assert "custom_formula" in details


def test_matrix_weights_not_summing_to_one_are_saved_with_warning(tenant, caplog):
    payload = {
        "name": "Lopsided",
        "calculation_method": "weighted_average",
        "risk_levels": [{"level": "low", "required_approvers": 1}],
        "impact_categories": [
            {"category": "business_impact", "weight": 0.5, "thresholds": {"low": 0}},
            {"category": "user_impact", "weight": 0.2, "thresholds": {"low": 0}},
        ],
    }
    with caplog.at_level(logging.WARNING, logger="change_engine.services.change_settings_service"):
        created = settings.create_setting(tenant.id, "risk_matrix", payload)

    assert created["name"] == "Lopsided"
    assert "Impact category weights do not sum to 1" in caplog.text


def test_matrix_weights_summing_to_one_log_nothing(tenant, caplog):
    payload = {
        "name": "Balanced",
        "risk_levels": [{"level": "low", "required_approvers": 1}],
        "impact_categories": [
            {"category": "business_impact", "weight": 0.7},
            {"category": "user_impact", "weight": 0.3},
        ],
    }
    with caplog.at_level(logging.WARNING, logger="change_engine.services.change_settings_service"):
        settings.create_setting(tenant.id, "risk_matrix", payload)

    assert "do not sum to 1" not in caplog.text


def test_category_validation(tenant):
    with pytest.raises(ValidationError) as exc:
        settings.create_setting(tenant.id, "change_category", {
            "name": "Network",
            "default_risk_level": "severe",
            "default_maintenance_window": {"preferred_times": ["25:00"]},
            "notifications": {"channels": ["pager"]},
            "approval_workflow_id": 4242,
        })
    assert set(exc.value.details) == {
        "default_risk_level",
        "default_maintenance_window.preferred_times",
        "notifications.channels",
        "approval_workflow_id",
    }


# ── Change-creation projections ──────────────────────────────────────────


def test_projections_for_empty_tenant(tenant):
    assert settings.get_categories_for_change_creation(tenant.id) == []
    assert settings.get_workflows_for_change_creation(tenant.id) == []
    assert settings.get_risk_matrix_for_change_creation(tenant.id) is None


def test_projections_skip_inactive_rows(seeded_tenant):
    security = next(c for c in settings.list_settings(seeded_tenant.id, "change_category")
                    if c["name"] == "Security")
    settings.update_setting(seeded_tenant.id, "change_category", security["id"], {"is_active": False})
    names = [c["name"] for c in settings.get_categories_for_change_creation(seeded_tenant.id)]
    assert "Security" not in names
    assert settings.get_category_for_change_creation(seeded_tenant.id, security["id"]) is None


def test_projection_cache_is_invalidated_on_write(tenant):
    row = settings.create_setting(tenant.id, "change_category", {"name": "Network"})
    assert [c["name"] for c in settings.get_categories_for_change_creation(tenant.id)] == ["Network"]

    # a write outside the registry is not seen until the registry writes
    db.session.get(ChangeCategory, row["id"]).description = "edited directly"
    db.session.commit()
    assert settings.get_categories_for_change_creation(tenant.id)[0]["description"] != "edited directly"

    settings.update_setting(tenant.id, "change_category", row["id"], {"color": "#000000"})
    cached = settings.get_categories_for_change_creation(tenant.id)[0]
    assert cached["description"] == "edited directly"
    assert cached["color"] == "#000000"
