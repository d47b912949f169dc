"""Workflow selection: first match by priority, trigger conditions, routing."""

from datetime import datetime, timezone

from change_engine.services.workflow_selector import (
    choose_route,
    is_business_hours,
    matches,
    select_workflow,
)


def _wf(wid, priority, **conditions):
    return {
        "id": wid,
        "name": f"wf-{wid}",
        "priority": priority,
        "is_active": conditions.pop("is_active", True),
        "trigger_conditions": conditions,
        "approval_steps": [{"step_number": 1, "name": "Review", "required_approvers": 1}],
    }


def test_first_match_by_priority_not_best_match():
    broad = _wf(1, 1, risk_level=["medium", "high"])
    specific = _wf(2, 5, risk_level=["high"], impact_level=["high"], change_types=["database"])
    chosen = select_workflow([specific, broad], risk_level="high", impact_level="high",
                             change_type="database", business_hours=False)
    assert chosen["id"] == 1


def test_priority_ties_break_by_id():
    a = _wf(7, 1)
    b = _wf(3, 1)
    assert select_workflow([a, b], risk_level="low", impact_level="low", business_hours=False)["id"] == 3


def test_inactive_workflows_are_ignored():
    off = _wf(1, 0, is_active=False)
    on = _wf(2, 9)
    assert select_workflow([off, on], risk_level="low", impact_level="low", business_hours=False)["id"] == 2


def test_absent_conditions_do_not_constrain():
    assert matches(_wf(1, 1), risk_level="critical", impact_level="low", change_type=None)


def test_emergency_override_must_equal_request_flag():
    emergency = _wf(1, 0, emergency_override=True)
    assert matches(emergency, risk_level="low", impact_level="low", is_emergency=True)
    assert not matches(emergency, risk_level="low", impact_level="low", is_emergency=False)
    standard = _wf(2, 1, emergency_override=False)
    assert not matches(standard, risk_level="low", impact_level="low", is_emergency=True)


def test_business_hours_condition():
    office = _wf(1, 1, business_hours=True)
    monday_10 = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
    saturday_10 = datetime(2026, 10, 17, 10, 0, tzinfo=timezone.utc)
    assert select_workflow([office], risk_level="low", impact_level="low", now=monday_10) is not None
    assert select_workflow([office], risk_level="low", impact_level="low", now=saturday_10) is None


def test_is_business_hours_uses_configured_window():
    assert is_business_hours(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc))
    assert not is_business_hours(datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc))
    assert not is_business_hours(datetime(2026, 10, 18, 12, 0))  # naive Sunday


def test_change_types_condition():
    db_only = _wf(1, 1, change_types=["database"])
    assert select_workflow([db_only], risk_level="low", impact_level="low",
                           change_type="network", business_hours=False) is None


class TestChooseRoute:
    def test_category_workflow_wins_over_triggers(self):
        first = _wf(1, 0)
        pinned = _wf(2, 9, risk_level=["critical"])
        route = choose_route([first, pinned], category={"id": 5, "approval_workflow_id": 2},
                             risk_level="low", impact_level="low")
        assert route.workflow_id == 2
        assert route.requires_approval

    def test_category_pointing_at_inactive_workflow_falls_back_to_triggers(self):
        gone = _wf(2, 0, is_active=False)
        route = choose_route([gone], category={"id": 5, "approval_workflow_id": 2,
                                               "requires_approval": False},
                             risk_level="low", impact_level="low")
        assert route.workflow is None
        assert route.requires_approval is False

    def test_no_match_with_category_follows_category_flag(self):
        route = choose_route([], category={"id": 5, "requires_approval": True},
                             risk_level="low", impact_level="low")
        assert route.requires_approval and route.workflow is None

    def test_no_category_uses_risk_policy(self):
        route = choose_route([], category=None, risk_level="low", impact_level="low",
                             controls={"auto_approval_allowed": True})
        assert route.requires_approval is False
        route = choose_route([], category=None, risk_level="high", impact_level="low",
                             controls={"auto_approval_allowed": False})
        assert route.requires_approval is True

    def test_no_reference_data_requires_approval(self):
        route = choose_route([], category=None, risk_level="medium", impact_level="medium")
        assert route.to_dict() == {
            "requires_approval": True,
            "approval_workflow_id": None,
            "approval_workflow": None,
            "reason": "no reference data",
        }
