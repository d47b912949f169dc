"""
Approval Workflow Selector — first match wins.

Active workflows are evaluated in ascending ``priority`` (ties by id). For
each workflow every PRESENT trigger condition must hold:

    risk_level         request risk level ∈ list
    impact_level       request impact level ∈ list
    change_types       request change type ∈ list
    business_hours     is_business_hours(now) == value
    emergency_override request.is_emergency == value

The first workflow that passes is selected. This is NOT best-match:
workflows with overlapping conditions are order-sensitive and their
priorities decide the route.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

DEFAULT_BUSINESS_HOURS = (8, 18)
DEFAULT_BUSINESS_DAYS = (0, 1, 2, 3, 4)  # Mon–Fri


@dataclass
class WorkflowSelection:
    """Route decided for a new request."""
    requires_approval: bool
    workflow: dict | None = None
    reason: str = ""

    @property
    def workflow_id(self):
        return self.workflow.get("id") if self.workflow else None

    def to_dict(self) -> dict:
        return {
            "requires_approval": self.requires_approval,
            "approval_workflow_id": self.workflow_id,
            "approval_workflow": self.workflow.get("name") if self.workflow else None,
            "reason": self.reason,
        }


def ordered(workflows) -> list[dict]:
    """Active workflows by ascending priority, then id."""
    active = [w for w in workflows or [] if w.get("is_active", True)]
    return sorted(active, key=lambda w: (int(w.get("priority") or 0), w.get("id") or 0))


def matches(workflow: dict, *, risk_level, impact_level, change_type=None,
            is_emergency=False, business_hours=False) -> bool:
    conditions = workflow.get("trigger_conditions") or {}

    risk_levels = conditions.get("risk_level")
    if risk_levels and risk_level not in risk_levels:
        return False
    impact_levels = conditions.get("impact_level")
    if impact_levels and impact_level not in impact_levels:
        return False
    change_types = conditions.get("change_types")
    if change_types and change_type not in change_types:
        return False
    if conditions.get("business_hours") is not None and bool(conditions["business_hours"]) != bool(business_hours):
        return False
    if conditions.get("emergency_override") is not None and bool(conditions["emergency_override"]) != bool(is_emergency):
        return False
    return True


def select_workflow(workflows, *, risk_level, impact_level, change_type=None,
                    now: datetime | None = None, is_emergency=False,
                    business_hours: bool | None = None) -> dict | None:
    """Return the first matching workflow, or None."""
    if business_hours is None:
        business_hours = is_business_hours(now or datetime.now(timezone.utc))
    for workflow in ordered(workflows):
        if matches(workflow, risk_level=risk_level, impact_level=impact_level,
                   change_type=change_type, is_emergency=is_emergency,
                   business_hours=business_hours):
            logger.debug("Workflow matched", extra={"workflow_id": workflow.get("id"),
                                                    "risk_level": risk_level})
            return workflow
    return None


def choose_route(workflows, *, category: dict | None, risk_level, impact_level,
                 controls: dict | None = None, change_type=None, now=None,
                 is_emergency=False) -> WorkflowSelection:
    """Full routing decision for request creation.

    1. A category that names an active workflow uses it.
    2. Otherwise the first trigger match wins.
    3. No match: the category's requires_approval decides; without a
       category, approval is required unless the risk level allows
       auto-approval.
    """
    by_id = {w.get("id"): w for w in ordered(workflows)}
    if category and category.get("approval_workflow_id") in by_id:
        workflow = by_id[category["approval_workflow_id"]]
        return WorkflowSelection(True, workflow, reason="category workflow")

    workflow = select_workflow(
        workflows, risk_level=risk_level, impact_level=impact_level,
        change_type=change_type, now=now, is_emergency=is_emergency,
    )
    if workflow is not None:
        return WorkflowSelection(True, workflow, reason="trigger match")

    if category is not None:
        return WorkflowSelection(bool(category.get("requires_approval", True)),
                                 reason="category default")
    if controls:
        return WorkflowSelection(not controls.get("auto_approval_allowed", False),
                                 reason="risk level policy")
    return WorkflowSelection(True, reason="no reference data")


def is_business_hours(now: datetime) -> bool:
    """True when *now* (UTC) falls inside the configured business window."""
    start, end = DEFAULT_BUSINESS_HOURS
    days = DEFAULT_BUSINESS_DAYS
    if has_app_context():
        start = current_app.config.get("CHANGE_BUSINESS_HOURS_START", start)
        end = current_app.config.get("CHANGE_BUSINESS_HOURS_END", end)
        days = current_app.config.get("CHANGE_BUSINESS_DAYS", days)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.weekday() in days and start <= now.hour < end
