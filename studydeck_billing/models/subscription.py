"""Subscription record model.

One row per user. subscription_records.status is the single local source
of truth for feature gating; it is written only by webhook ingestion,
reconciliation, the cancellation endpoint and the administrative reset.

`version` is the optimistic-lock column: SQLAlchemy adds
`WHERE version = <loaded>` to every UPDATE and raises StaleDataError when
another writer got there first.
"""

import uuid

from studydeck_billing.extensions import db


class SubscriptionRecord(db.Model):
    __tablename__ = "subscription_records"

    # -- Local lifecycle statuses --
    STATUSES = [
        "free",
        "trialing",
        "active",
        "past_due_grace",
        "cancelled",
        "expired",
    ]
    PLANS = ["monthly", "yearly"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), unique=True, nullable=False
    )
    external_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    external_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    status = db.Column(
        db.String(50), nullable=False, default="free", index=True
    )  # free | trialing | active | past_due_grace | cancelled | expired
    plan = db.Column(db.String(20), nullable=True)  # monthly | yearly
    period_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Watermarks used to ignore webhooks older than what we already know.
    last_event_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # Every reconciliation attempt, whatever the outcome; orders the sync batch.
    last_sync_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version}

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscription")

    def __repr__(self):
        return f"<SubscriptionRecord user={self.user_id} ({self.status})>"
