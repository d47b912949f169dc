"""
Approval Timeout & Escalation Sweep

Finds Pending Approval requests whose current step has been current for
longer than its ``timeout_hours`` and applies the workflow's
``escalation_rules.timeout_action``:

    auto_approve   system approval record; the step completes and advances
    auto_reject    the whole request is rejected by "system"
    escalate       no state change; escalation_path roles are notified, at
                   most once per notification_frequency hours per step

Each request is handled in its own transaction through the same
approve/reject primitives as user decisions, so a user rejection racing a
sweep ends in exactly one outcome. Re-running a sweep after a step has
advanced is a no-op.

Usage:
    from change_engine.services.escalation import EscalationService
    summary = EscalationService.sweep_timeouts(tenant_id=1)
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select

from change_engine.core.exceptions import ConcurrencyConflictError, InvalidTransitionError
from change_engine.models import db
from change_engine.models.base import as_utc, utcnow
from change_engine.models.change_request import STATUS_PENDING, SYSTEM_APPROVER, ChangeRequest
from change_engine.models.tenant import Tenant
from change_engine.services import change_request_service as changes
from change_engine.services.approval_engine import OUTCOME_PENDING, state_for_request
from change_engine.services.collaborators import get_collaborators

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_ACTION = "escalate"
DEFAULT_NOTIFICATION_FREQUENCY_HOURS = 24


class EscalationService:
    """Stateless sweep over pending change requests."""

    # ── Entry points ──────────────────────────────────────────────────────

    @staticmethod
    def sweep_timeouts(tenant_id: int | None = None, now=None) -> dict:
        """Sweep one tenant, or every active tenant when *tenant_id* is None.

        Returns:
            Summary counts: checked, auto_approved, auto_rejected,
            escalated, conflicts.
        """
        now = as_utc(now) or utcnow()
        summary = {"checked": 0, "auto_approved": 0, "auto_rejected": 0, "escalated": 0, "conflicts": 0}

        if tenant_id is None:
            tenant_ids = db.session.execute(
                select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
            ).scalars().all()
        else:
            tenant_ids = [tenant_id]

        for tid in tenant_ids:
            request_ids = db.session.execute(
                select(ChangeRequest.id)
                .where(ChangeRequest.tenant_id == tid, ChangeRequest.status == STATUS_PENDING)
                .order_by(ChangeRequest.id)
            ).scalars().all()
            for request_id in request_ids:
                summary["checked"] += 1
                try:
                    action = EscalationService.process_request(tid, request_id, now)
                except (ConcurrencyConflictError, InvalidTransitionError) as exc:
                    # A user decision won the race; the next sweep re-evaluates.
                    summary["conflicts"] += 1
                    logger.warning(
                        "Escalation skipped after concurrent change: %s", exc,
                        extra={"tenant_id": tid, "change_id": request_id},
                    )
                    continue
                if action:
                    summary[action] += 1

        logger.info("Escalation sweep finished", extra={"tenant_id": tenant_id, **summary})
        return summary

    @staticmethod
    def process_request(tenant_id: int, request_id: int, now) -> str | None:
        """Apply the timeout action to one request if its step timed out.

        Returns the summary key of the action taken, or None.
        """
        change = changes.get_change_request(tenant_id, request_id)
        if change.status != STATUS_PENDING:
            return None
        state = state_for_request(change)
        step = state.current
        if state.outcome != OUTCOME_PENDING or step is None or not step.timed_out(now):
            return None

        rules = change.escalation_rules or {}
        action = rules.get("timeout_action") or DEFAULT_TIMEOUT_ACTION
        log_extra = {"tenant_id": tenant_id, "change_id": request_id,
                     "step_number": step.step_number, "timeout_action": action}

        if action == "auto_approve":
            changes.apply_approval(
                change, SYSTEM_APPROVER, is_system=True, now=now,
                reason=f"Auto-approved: step {step.step_number} exceeded {step.timeout_hours}h timeout",
            )
            changes.commit_change(request_id)
            logger.info("Step auto-approved after timeout", extra=log_extra)
            return "auto_approved"

        if action == "auto_reject":
            changes.apply_rejection(
                change, SYSTEM_APPROVER, is_system=True, now=now,
                reason=f"Auto-rejected: step {step.step_number} exceeded {step.timeout_hours}h timeout",
            )
            changes.commit_change(request_id)
            logger.info("Request auto-rejected after timeout", extra=log_extra)
            return "auto_rejected"

        if not EscalationService._escalation_due(change, step, rules, now):
            return None
        recipients = EscalationService._escalation_recipients(tenant_id, rules, step)
        get_collaborators().notifier.notify(
            change, "escalated", recipients=recipients,
            message=f"Step {step.step_number} ({step.name}) of {change.change_number} "
                    f"is overdue ({step.timeout_hours}h timeout)",
        )
        change.last_escalated_at = now
        changes.touch(change, SYSTEM_APPROVER, now)
        changes.commit_change(request_id)
        logger.info("Overdue approval step escalated", extra={**log_extra, "recipients": recipients})
        return "escalated"

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _escalation_due(change, step, rules, now) -> bool:
        """First notice for this step, or notification_frequency has elapsed."""
        last = as_utc(change.last_escalated_at)
        if last is None or (step.became_current_at and last < step.became_current_at):
            return True
        frequency = float(rules.get("notification_frequency") or DEFAULT_NOTIFICATION_FREQUENCY_HOURS)
        return now - last >= timedelta(hours=frequency)

    @staticmethod
    def _escalation_recipients(tenant_id, rules, step) -> list[str]:
        roles = rules.get("escalation_path") or step.approver_roles
        resolver = get_collaborators().roles
        recipients: list[str] = []
        for role in roles:
            for member in resolver.resolve(tenant_id, role) or [role]:
                if member not in recipients:
                    recipients.append(member)
        return recipients
