"""
Approval Step Engine — replay-to-derive.

Step progress and the approve/reject outcome of a change request are never
stored as counters. They are recomputed from three immutable inputs:

    * the approval-step snapshot copied onto the request at creation,
    * the request's approval ledger (ChangeApprovalRecord rows, in id order),
    * the request facts visible to conditional-skip rules.

Rules:
    - A step is satisfied when the number of DISTINCT approver identities
      with an ``approved`` record for that step reaches required_approvers.
      Repeated approvals by the same identity never count twice.
    - parallel_approval is informational; sequential steps are count-based
      and the engine only exposes the current step so callers can restrict
      who may act.
    - A conditional_skip rule is evaluated when the step becomes current.
      When the condition result equals skip_if the step completes with zero
      approvals and leaves no ledger record.
    - A system-originated approval (escalation ``auto_approve``) completes
      its step regardless of the approver count.
    - Any ``rejected`` record makes the whole request rejected.
    - A step's timeout clock starts when it becomes current: submission for
      the first step, otherwise the ledger record that completed the
      previous step.

Usage:
    from change_engine.services.approval_engine import state_for_request
    state = state_for_request(change)
    state.outcome        # "pending" | "approved" | "rejected"
    state.current        # StepState | None
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from change_engine.core.exceptions import ConfigurationError
from change_engine.models.base import as_utc, iso
from change_engine.models.change_request import (
    DECISION_APPROVED,
    DECISION_REJECTED,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
)

logger = logging.getLogger(__name__)

OUTCOME_PENDING = "pending"
OUTCOME_APPROVED = "approved"
OUTCOME_REJECTED = "rejected"

STEP_WAITING = "waiting"
STEP_CURRENT = "current"
STEP_COMPLETED = "completed"
STEP_SKIPPED = "skipped"

# Facts a conditional-skip rule may reference (see ChangeRequest.facts()).
SKIP_FACTS = frozenset({
    "risk_level", "impact", "risk_score", "category", "change_type",
    "is_emergency", "requires_testing", "requires_rollback",
    "requires_documentation", "requires_communication",
})

_CONDITION_RE = re.compile(
    r"^\s*(?P<field>[A-Za-z_][A-Za-z0-9_]*)\s+(?P<op>==|!=|not\s+in|in)\s+(?P<value>.+?)\s*$"
)


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class StepState:
    step_number: int
    name: str
    required_approvers: int
    approver_roles: list[str] = field(default_factory=list)
    parallel_approval: bool = False
    timeout_hours: float | None = None
    status: str = STEP_WAITING
    approvers: list[str] = field(default_factory=list)
    became_current_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return max(self.required_approvers - len(self.approvers), 0)

    def timed_out(self, now: datetime) -> bool:
        """True when the step is current and its timeout has elapsed."""
        if self.status != STEP_CURRENT or not self.timeout_hours or self.became_current_at is None:
            return False
        return as_utc(now) >= self.became_current_at + timedelta(hours=float(self.timeout_hours))

    def to_dict(self) -> dict:
        return {
            "step_number": self.step_number,
            "name": self.name,
            "required_approvers": self.required_approvers,
            "approver_roles": self.approver_roles,
            "parallel_approval": self.parallel_approval,
            "timeout_hours": self.timeout_hours,
            "status": self.status,
            "approvers": self.approvers,
            "remaining_approvals": self.remaining,
            "became_current_at": iso(self.became_current_at),
            "completed_at": iso(self.completed_at),
        }


@dataclass
class ApprovalState:
    outcome: str
    steps: list[StepState] = field(default_factory=list)
    current_index: int | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None

    @property
    def current(self) -> StepState | None:
        if self.current_index is None:
            return None
        return self.steps[self.current_index]

    @property
    def current_step_number(self) -> int | None:
        step = self.current
        return step.step_number if step else None

    @property
    def completed_steps(self) -> list[int]:
        return [s.step_number for s in self.steps if s.status == STEP_COMPLETED]

    @property
    def skipped_steps(self) -> list[int]:
        return [s.step_number for s in self.steps if s.status == STEP_SKIPPED]

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "current_step": self.current_step_number,
            "completed_steps": self.completed_steps,
            "skipped_steps": self.skipped_steps,
            "steps": [s.to_dict() for s in self.steps],
            "approved_at": iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Replay
# ═════════════════════════════════════════════════════════════════════════════

def derive_approval_state(steps, records, facts: dict, started_at: datetime | None) -> ApprovalState:
    """Replay *records* over the *steps* snapshot.

    Args:
        steps: Approval-step snapshot (list of dicts).
        records: Ledger records (ORM rows or dicts) in append order.
        facts: Request facts for conditional-skip rules.
        started_at: When the first step became current (submission time).
    """
    started_at = as_utc(started_at)
    step_states = [_step_state(s) for s in sorted(steps or [], key=lambda s: int(s["step_number"]))]
    ledger = list(records or [])

    state = ApprovalState(outcome=OUTCOME_PENDING, steps=step_states)

    rejection = next((r for r in ledger if _field(r, "decision") == DECISION_REJECTED), None)

    clock = started_at
    for index, step in enumerate(step_states):
        step.became_current_at = clock
        if should_skip(step_rule(steps, step.step_number), facts):
            step.status = STEP_SKIPPED
            step.completed_at = clock
            logger.debug("Approval step skipped by condition", extra={"step_number": step.step_number})
            continue

        step.status = STEP_CURRENT
        for record in ledger:
            if _field(record, "decision") != DECISION_APPROVED:
                continue
            if _field(record, "step_number") != step.step_number:
                continue
            approver = _field(record, "approver")
            if approver in step.approvers:
                continue
            step.approvers.append(approver)
            # A system (timeout) approval completes the step on its own.
            if _field(record, "is_system") or len(step.approvers) >= step.required_approvers:
                recorded_at = as_utc(_field(record, "created_at"))
                if clock is not None and recorded_at is not None:
                    recorded_at = max(recorded_at, clock)
                step.status = STEP_COMPLETED
                step.completed_at = recorded_at
                break

        if step.status == STEP_CURRENT:
            state.current_index = index
            break
        clock = step.completed_at

    if rejection is not None:
        state.outcome = OUTCOME_REJECTED
        state.rejected_by = _field(rejection, "approver")
        state.rejected_at = as_utc(_field(rejection, "created_at"))
        state.rejection_reason = _field(rejection, "reason")
    elif state.current_index is None:
        state.outcome = OUTCOME_APPROVED
        state.approved_at = clock if step_states else started_at
    return state


def state_for_request(change) -> ApprovalState:
    """Replay the ledger of a ChangeRequest."""
    return derive_approval_state(
        change.approval_steps,
        change.approvals,
        change.facts(),
        change.submitted_at,
    )


def ledger_agrees(change, state: ApprovalState | None = None) -> bool:
    """Does the stored status match what the ledger replays to?

    Approved requests may have moved on to In Progress / Completed; those
    transitions are not ledger events.
    """
    state = state or state_for_request(change)
    if state.outcome == OUTCOME_REJECTED:
        return change.status == STATUS_REJECTED
    if change.status == STATUS_REJECTED:
        return False
    if change.submitted_at is None:
        return change.status == STATUS_DRAFT and not list(change.approvals)
    if state.outcome == OUTCOME_APPROVED:
        return change.status in (STATUS_APPROVED, STATUS_IN_PROGRESS, STATUS_COMPLETED)
    return change.status == STATUS_PENDING


def step_rule(steps, step_number):
    for step in steps or []:
        if int(step["step_number"]) == step_number:
            return step
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Conditional skip
# ═════════════════════════════════════════════════════════════════════════════

def parse_condition(condition: str) -> tuple[str, str, object]:
    """Parse ``<field> <op> <value>`` into (field, op, value).

    op is one of ``==``, ``!=``, ``in``, ``not in``. For the membership
    operators the value is a comma-separated list, optionally wrapped in
    brackets. Raises ConfigurationError when the rule is malformed.
    """
    match = _CONDITION_RE.match(condition or "")
    if not match:
        raise ConfigurationError(f"Invalid skip condition {condition!r}; expected '<field> <op> <value>'")
    field_name = match.group("field")
    if field_name not in SKIP_FACTS:
        raise ConfigurationError(
            f"Unknown field {field_name!r} in skip condition; allowed: {', '.join(sorted(SKIP_FACTS))}"
        )
    op = " ".join(match.group("op").split())
    raw = match.group("value").strip()

    if op in ("in", "not in"):
        if raw[:1] in "[(" and raw[-1:] in "])":
            raw = raw[1:-1]
        items = [_literal(part) for part in raw.split(",") if part.strip()]
        if not items:
            raise ConfigurationError(f"Empty value list in skip condition {condition!r}")
        return field_name, op, items
    return field_name, op, _literal(raw)


def evaluate_condition(condition: str, facts: dict) -> bool:
    field_name, op, expected = parse_condition(condition)
    actual = facts.get(field_name)
    if op == "==":
        return _equals(actual, expected)
    if op == "!=":
        return not _equals(actual, expected)
    hit = any(_equals(actual, item) for item in expected)
    return hit if op == "in" else not hit


def should_skip(step: dict | None, facts: dict) -> bool:
    rule = (step or {}).get("conditional_skip") or {}
    condition = rule.get("condition")
    if not condition:
        return False
    skip_if = rule.get("skip_if", True)
    return evaluate_condition(condition, facts or {}) == bool(skip_if)


# ── helpers ──────────────────────────────────────────────────────────────────

def _step_state(step: dict) -> StepState:
    return StepState(
        step_number=int(step["step_number"]),
        name=step.get("name") or f"Step {step['step_number']}",
        required_approvers=max(int(step.get("required_approvers") or 1), 1),
        approver_roles=list(step.get("approver_roles") or []),
        parallel_approval=bool(step.get("parallel_approval")),
        timeout_hours=step.get("timeout_hours"),
    )


def _field(record, name):
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _literal(token: str):
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"":
        return token[1:-1]
    lowered = token.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none"):
        return None
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return float(token)
    except ValueError:
        return token


def _equals(actual, expected) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return float(actual) == float(expected)
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.casefold() == expected.casefold()
    return actual == expected
