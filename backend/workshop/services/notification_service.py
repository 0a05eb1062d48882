# Overview: Notification outbox; rows are written in the business transaction and sent after commit.

"""
Notification outbox.

enqueue() adds an outbox row to the current session and remembers it.
dispatch_queued() is called by services right after their commit and hands
every row that actually committed to the configured sender. A row from a
rolled-back unit never reaches the sender because it was never persisted.

Delivery is best-effort: sender failures are logged, the row is marked
failed, and nothing propagates to the caller. `flask outbox dispatch`
retries pending and failed rows. Setting NOTIFICATION_DISPATCH_INLINE to
false skips the after-commit send entirely, so request latency never
depends on the sender; a worker then drains the outbox with
`flask outbox dispatch`.
"""

from __future__ import annotations

from typing import Protocol

from flask import current_app
from sqlalchemy import inspect

from ..extensions import db
from ..models import NotificationOutbox, User
from ..models.auth import ROLE_ADMIN
from ..time_utils import utcnow


SENDER_EXTENSION_KEY = "notification_sender"
_QUEUE_KEY = "workshop.outbox_queue"
MAX_ATTEMPTS = 5


class NotificationSender(Protocol):
    def notify(self, recipient_ref: str, template_kind: str, payload: dict) -> None:
        ...


class LogNotificationSender:
    """Default sender: writes the notification to the application log."""

    def notify(self, recipient_ref: str, template_kind: str, payload: dict) -> None:
        current_app.logger.info(
            "notification %s -> %s: %s", template_kind, recipient_ref, payload
        )


def get_sender() -> NotificationSender:
    sender = current_app.extensions.get(SENDER_EXTENSION_KEY)
    if sender is None:
        sender = LogNotificationSender()
        current_app.extensions[SENDER_EXTENSION_KEY] = sender
    return sender


def user_ref(user_id: int) -> str:
    return f"user:{user_id}"


def enqueue(recipient_ref: str, template_kind: str, payload: dict | None = None) -> NotificationOutbox:
    """Add an outbox row to the current unit of work. Does not flush or commit."""
    row = NotificationOutbox(
        recipient_ref=recipient_ref,
        template_kind=template_kind,
        payload=payload or {},
        status="pending",
        attempts=0,
    )
    db.session.add(row)
    db.session.info.setdefault(_QUEUE_KEY, []).append(row)
    return row


def enqueue_for_admins(template_kind: str, payload: dict) -> list[NotificationOutbox]:
    admins = (
        db.session.query(User)
        .filter(User.role == ROLE_ADMIN, User.is_active.is_(True))
        .order_by(User.id)
        .all()
    )
    return [enqueue(user_ref(a.id), template_kind, payload) for a in admins]


def _committed(row: NotificationOutbox) -> bool:
    state = inspect(row)
    return state.persistent and not state.deleted


def _deliver(rows: list[NotificationOutbox]) -> int:
    sender = get_sender()
    sent = 0
    for row in rows:
        row.attempts = (row.attempts or 0) + 1
        try:
            sender.notify(row.recipient_ref, row.template_kind, dict(row.payload or {}))
        except Exception as exc:
            current_app.logger.warning(
                "Notification %s (%s -> %s) failed: %s",
                row.id, row.template_kind, row.recipient_ref, exc,
            )
            row.status = "failed"
            row.last_error = str(exc)[:255]
            continue
        row.status = "sent"
        row.last_error = None
        row.dispatched_at = utcnow()
        sent += 1
    return sent


def dispatch_queued() -> int:
    """
    Send the rows enqueued by the unit of work that just committed.

    Never raises; returns the number of rows delivered. With
    NOTIFICATION_DISPATCH_INLINE off the rows stay pending for
    dispatch_pending().
    """
    queued = db.session.info.pop(_QUEUE_KEY, [])
    if not current_app.config.get("NOTIFICATION_DISPATCH_INLINE", True):
        return 0
    rows = [r for r in queued if _committed(r)]
    if not rows:
        return 0
    try:
        sent = _deliver(rows)
        db.session.commit()
        return sent
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record notification dispatch results")
        return 0


def dispatch_pending(limit: int = 100) -> int:
    """Retry pending or failed rows (operator / CLI entry point)."""
    rows = (
        db.session.query(NotificationOutbox)
        .filter(
            NotificationOutbox.status.in_(("pending", "failed")),
            NotificationOutbox.attempts < MAX_ATTEMPTS,
        )
        .order_by(NotificationOutbox.id)
        .limit(limit)
        .all()
    )
    if not rows:
        return 0
    sent = _deliver(rows)
    db.session.commit()
    return sent
