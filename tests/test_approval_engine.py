"""Replay-to-derive approval state and conditional skip rules."""

from datetime import datetime, timedelta, timezone

import pytest

from change_engine.core.exceptions import ConfigurationError
from change_engine.services.approval_engine import (
    OUTCOME_APPROVED,
    OUTCOME_PENDING,
    OUTCOME_REJECTED,
    derive_approval_state,
    evaluate_condition,
    parse_condition,
    should_skip,
)


STEPS = [
    {"step_number": 1, "name": "Technical Review", "required_approvers": 2,
     "approver_roles": ["Technical Lead"], "timeout_hours": 24},
    {"step_number": 2, "name": "Management Approval", "required_approvers": 1,
     "approver_roles": ["Manager"], "timeout_hours": 48},
]

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

FACTS = {"risk_level": "high", "impact": "medium", "is_emergency": False, "category": "Security"}

def _rec(step, approver, hours, decision="approved", is_system=False, reason=None):
    return {"step_number": step, "approver": approver, "decision": decision,
            "is_system": is_system, "reason": reason, "created_at": T0 + timedelta(hours=hours)}

def test_empty_ledger_first_step_current_since_submission():
    state = derive_approval_state(STEPS, [], FACTS, T0)
    assert state.outcome == OUTCOME_PENDING
    assert state.current_step_number == 1
    assert state.current.became_current_at == T0
    assert state.current.remaining == 2

def test_same_identity_counts_once():
    state = derive_approval_state(STEPS, [_rec(1, "ann", 1), _rec(1, "ann", 2)], FACTS, T0)
    assert state.current_step_number == 1
    assert state.current.approvers == ["ann"]

def test_step_completes_once_and_next_step_clock_starts():
    records = [_rec(1, "ann", 1), _rec(1, "bob", 3), _rec(1, "cid", 4)]
    state = derive_approval_state(STEPS, records, FACTS, T0)
    assert state.completed_steps == [1]
    assert state.current_step_number == 2
    assert state.current.became_current_at == T0 + timedelta(hours=3)
    # the third approval for step 1 never spills into step 2
    assert state.current.approvers == []

def test_all_steps_satisfied_is_approved():
    records = [_rec(1, "ann", 1), _rec(1, "bob", 2), _rec(2, "meg", 5)]
    state = derive_approval_state(STEPS, records, FACTS, T0)
    assert state.outcome == OUTCOME_APPROVED
    assert state.current is None
    assert state.approved_at == T0 + timedelta(hours=5)

def test_system_approval_completes_step_alone():
    state = derive_approval_state(STEPS, [_rec(1, "system", 25, is_system=True)], FACTS, T0)
    assert state.completed_steps == [1]
    assert state.current_step_number == 2

def test_any_rejection_rejects_request():
    records = [_rec(1, "ann", 1), _rec(1, "bob", 2, decision="rejected", reason="too risky")]
    state = derive_approval_state(STEPS, records, FACTS, T0)
    assert state.outcome == OUTCOME_REJECTED
    assert state.rejected_by == "bob"
    assert state.rejection_reason == "too risky"

def test_no_steps_is_approved():
    state = derive_approval_state([], [], FACTS, T0)
    assert state.outcome == OUTCOME_APPROVED
    assert state.approved_at == T0

def test_timeout_measured_from_became_current():
    state = derive_approval_state(STEPS, [], FACTS, T0)
    assert not state.current.timed_out(T0 + timedelta(hours=23))
    assert state.current.timed_out(T0 + timedelta(hours=24))

class TestConditionalSkip:
    def _steps(self, condition, skip_if=True):
        steps = [dict(s) for s in STEPS]
        steps[0]["conditional_skip"] = {"condition": condition, "skip_if": skip_if}
        return steps

    def test_true_condition_skips_step_without_ledger_entry(self):
        state = derive_approval_state(self._steps("risk_level == 'high'"), [], FACTS, T0)
        assert state.skipped_steps == [1]
        assert state.current_step_number == 2
        assert state.current.became_current_at == T0

    def test_skip_if_false_inverts_rule(self):
        state = derive_approval_state(self._steps("risk_level == 'high'", skip_if=False), [], FACTS, T0)
        assert state.skipped_steps == []
        assert state.current_step_number == 1

    def test_all_steps_skipped_is_approved(self):
        steps = self._steps("is_emergency == false")
        steps[1]["conditional_skip"] = {"condition": "impact in [low, medium]"}
        state = derive_approval_state(steps, [], FACTS, T0)
        assert state.outcome == OUTCOME_APPROVED

    def test_membership_and_case_insensitivity(self):
        assert evaluate_condition("category in ('security', 'network')", FACTS)
        assert evaluate_condition("impact not in [high, critical]", FACTS)
        assert not evaluate_condition("risk_level != HIGH", FACTS)

    def test_should_skip_without_rule(self):
        assert should_skip({"step_number": 1}, FACTS) is False
        assert should_skip(None, FACTS) is False

    @pytest.mark.parametrize("condition", [
        "risk_level",
        "owner == 'bob'",
        "risk_level ~= high",
        "impact in []",
    ])
    def test_invalid_conditions(self, condition):
        with pytest.raises(ConfigurationError):
            parse_condition(condition)

    def test_parse_literals(self):
        assert parse_condition("risk_score == 42") == ("risk_score", "==", 42)
        assert parse_condition("is_emergency != true") == ("is_emergency", "!=", True)
        assert parse_condition("change_type not  in a, b") == ("change_type", "not in", ["a", "b"])
