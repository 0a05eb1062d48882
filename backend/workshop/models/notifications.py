from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


NOTIFICATION_STATUSES = ("pending", "sent", "failed")


class NotificationOutbox(db.Model):
    """
    Outbox row for best-effort notifications (status changes, low stock).

    Written inside the business unit of work; delivered only after that unit
    commits, so a delivery failure can never undo a job or stock mutation.
    """
    __tablename__ = "notification_outbox"
    __table_args__ = (
        db.Index("ix_notification_outbox_status", "status", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_ref = db.Column(db.String(64), nullable=False)
    template_kind = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(16), nullable=False, default="pending")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_ref": self.recipient_ref,
            "template_kind": self.template_kind,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "dispatched_at": to_utc_z(self.dispatched_at),
        }
