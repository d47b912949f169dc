"""
Notification outbox model.

Models:
    - Notification: one queued notice per recipient per change event.

Rows are written in the same transaction as the decision that caused them
and picked up by the platform's delivery workers (email/SMS/chat delivery is
outside this service). A delivery outage therefore never blocks an approval
from being recorded.
"""

from change_engine.models import db
from change_engine.models.base import TenantModel, iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_EVENTS = {
    "created", "approved", "rejected", "implemented", "completed",
    "step_advanced", "escalated", "auto_approved", "auto_rejected",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}
DELIVERY_STATUSES = {"queued", "sent", "failed"}


class Notification(TenantModel):
    """
    Queued notification entity.

    One record per recipient (identity, role name, or stakeholder group)
    per event; ``channels`` carries the category's channel policy so the
    delivery worker does not need a second lookup.
    """

    __tablename__ = "change_notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default="all", index=True,
                          comment="Identity, role or stakeholder group")
    event = db.Column(db.String(30), nullable=False, default="created")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), default="info")
    channels = db.Column(db.JSON, nullable=False, default=list)

    # Link to source entity
    change_request_id = db.Column(db.Integer, nullable=True, index=True)

    # Delivery tracking (owned by the delivery worker)
    status = db.Column(db.String(20), nullable=False, default="queued")
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def mark_sent(self):
        self.status = "sent"
        self.sent_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "recipient": self.recipient,
            "event": self.event,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "channels": self.channels or [],
            "change_request_id": self.change_request_id,
            "status": self.status,
            "sent_at": iso(self.sent_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
