"""Provider event model (webhook deduplication table).

Every webhook event is claimed by its provider event ID (or a SHA-256 of
the raw body when the provider sent none) inside the same transaction as
the state transition it causes. The unique constraint on event_key is what
turns a replayed delivery into a no-op.
"""

import uuid

from studydeck_billing.extensions import db


class ProviderEvent(db.Model):
    __tablename__ = "provider_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_key = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..." or "sha256:<hex>"
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "customer.subscription.updated"
    outcome = db.Column(db.String(50), nullable=True)  # applied | ignored | stale | unknown
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )

    def __repr__(self):
        return f"<ProviderEvent {self.event_key} ({self.event_type})>"
