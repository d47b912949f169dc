"""
Notification Service — change-management outbox.

Queues Notification rows in the caller's session. Nothing here commits on
the queueing path: a notice is persisted together with the approval or
lifecycle change that produced it, or not at all. Delivery (email, SMS,
chat) is performed by the platform's workers, which mark rows as sent.
"""

import logging

from change_engine.models import db
from change_engine.models.notification import Notification

logger = logging.getLogger(__name__)

# Lifecycle events a category's notification policy can subscribe to.
POLICY_EVENTS = frozenset({"created", "approved", "rejected", "implemented", "completed"})

_SEVERITY_BY_EVENT = {
    "created": "info",
    "approved": "success",
    "auto_approved": "success",
    "completed": "success",
    "implemented": "info",
    "step_advanced": "info",
    "rejected": "error",
    "auto_rejected": "error",
    "escalated": "warning",
}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Queue ─────────────────────────────────────────────────────────────

    @staticmethod
    def queue(*, tenant_id, title, message="", event="created", severity=None,
              recipients=None, channels=None, change_request_id=None):
        """
        Add one notification per recipient to the current session.

        Returns:
            List of pending Notification instances (not committed).
        """
        targets = recipients or ["all"]
        notifications = []
        for recipient in targets:
            notif = Notification(
                tenant_id=tenant_id,
                recipient=recipient,
                event=event,
                title=title,
                message=message,
                severity=severity or _SEVERITY_BY_EVENT.get(event, "info"),
                channels=list(channels or ["email"]),
                change_request_id=change_request_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        return notifications

    @staticmethod
    def notify_change_event(change, event, *, recipients=None, message=""):
        """
        Queue a notice about *change*.

        Lifecycle events (POLICY_EVENTS) follow the category's notification
        policy snapshot: nothing is queued unless the event is listed in
        ``timing``, and stakeholders are added to *recipients*. Engine events
        (step_advanced, escalated, auto_*) go only to *recipients*.
        """
        policy = change.notification_policy or {}
        targets = list(recipients or [])
        if event in POLICY_EVENTS:
            if event not in (policy.get("timing") or []):
                return []
            targets.extend(s for s in policy.get("stakeholders") or [] if s not in targets)
            if change.submitted_by and change.submitted_by not in targets:
                targets.append(change.submitted_by)
        if not targets:
            return []

        notices = NotificationService.queue(
            tenant_id=change.tenant_id,
            title=f"{change.change_number}: {event.replace('_', ' ')}",
            message=message or change.title,
            event=event,
            recipients=targets,
            channels=policy.get("channels") or ["email"],
            change_request_id=change.id,
        )
        logger.debug(
            "Queued %d notification(s)", len(notices),
            extra={"tenant_id": change.tenant_id, "change_id": change.id, "event": event},
        )
        return notices

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_tenant(tenant_id, *, change_request_id=None, status=None, limit=50, offset=0):
        """Notifications of a tenant, newest first."""
        q = Notification.query_for_tenant(tenant_id)
        if change_request_id is not None:
            q = q.filter_by(change_request_id=change_request_id)
        if status:
            q = q.filter_by(status=status)
        total = q.count()
        items = q.order_by(Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_sent(tenant_id, notification_id):
        """Delivery acknowledgement from the outbox worker."""
        notif = Notification.query_for_tenant(tenant_id).filter_by(id=notification_id).first()
        if notif:
            notif.mark_sent()
            db.session.commit()
        return notif
