"""Idempotency ledger for billing notifications.

A row means "this logical notification was already handed to the mailer".
Rows are created once, never updated, and only ever read as an existence
check through the unique constraint on `key`.
"""

import uuid

from studydeck_billing.extensions import db


class SentNotification(db.Model):
    __tablename__ = "sent_notifications"

    EVENT_KINDS = [
        "welcome",
        "trial_ending",
        "reminder",
        "payment_failed",
        "cancellation",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    key = db.Column(db.String(255), unique=True, nullable=False)
    event_kind = db.Column(db.String(50), nullable=False)
    recipient = db.Column(db.String(255), nullable=False)  # audit only
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<SentNotification {self.key}>"
