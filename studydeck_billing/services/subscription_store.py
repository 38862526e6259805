"""Subscription record store — the local source of truth for access gating.

Responsible for:
- Getting (implicitly creating) the per-user SubscriptionRecord
- Applying whole-record transitions (validated, optimistic-locked)
- Looking records up by provider identifiers
- The administrative reset
- Serialising the gating view for the read endpoint

Nothing in here talks to the payment provider.
"""

import logging

from studydeck_billing.extensions import db
from studydeck_billing.models.subscription import SubscriptionRecord
from studydeck_billing.services.subscription_state import (
    FREE,
    PLAN_STATUSES,
    TRIALING,
    is_access_active,
    is_subscription_active,
    isoformat,
    utcnow,
)

logger = logging.getLogger(__name__)

TRANSITION_FIELDS = (
    "status",
    "plan",
    "period_ends_at",
    "external_customer_id",
    "external_subscription_id",
    "trial_consumed_at",
    "last_event_at",
    "last_synced_at",
)


def get_record(user_id, create=True):
    """Return the user's SubscriptionRecord, creating a `free` one if missing.

    Creation is flushed (not committed) so the caller owns the transaction;
    a concurrent creator surfaces as IntegrityError at that flush.
    """
    record = SubscriptionRecord.query.filter_by(user_id=user_id).first()
    if record is not None or not create:
        return record

    record = SubscriptionRecord(user_id=user_id, status=FREE)
    db.session.add(record)
    db.session.flush()
    return record


def find_by_subscription_id(external_subscription_id):
    if not external_subscription_id:
        return None
    return SubscriptionRecord.query.filter_by(
        external_subscription_id=external_subscription_id
    ).first()


def find_by_customer_id(external_customer_id):
    if not external_customer_id:
        return None
    return SubscriptionRecord.query.filter_by(
        external_customer_id=external_customer_id
    ).first()


def apply_transition(record, patch):
    """Write a set of fields onto the record as one logical change.

    Last-writer-wins inside the row; the version column makes a concurrent
    writer fail at flush with StaleDataError instead of silently losing.
    Entering `trialing` stamps `trial_consumed_at` in the same write.

    Raises ValueError on unknown fields or enum values. Flushes, does not
    commit.
    """
    unknown = set(patch) - set(TRANSITION_FIELDS)
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")

    status = patch.get("status", record.status)
    if status not in SubscriptionRecord.STATUSES:
        raise ValueError(f"Invalid subscription status: {status}")

    plan = patch.get("plan", record.plan)
    if plan is not None and plan not in SubscriptionRecord.PLANS:
        raise ValueError(f"Invalid subscription plan: {plan}")

    for field, value in patch.items():
        setattr(record, field, value)

    if status == TRIALING and record.trial_consumed_at is None:
        record.trial_consumed_at = utcnow()

    db.session.flush()
    return record


def reset_subscription(record, reset_trial=False):
    """Administrative reset: back to `free` with all billing fields cleared.

    The row itself is kept. The trial marker survives unless explicitly
    reset, because it records identity-level history.
    """
    patch = {
        "status": FREE,
        "plan": None,
        "period_ends_at": None,
        "external_customer_id": None,
        "external_subscription_id": None,
    }
    if reset_trial:
        patch["trial_consumed_at"] = None
    return apply_transition(record, patch)


def serialize_gating(record, now=None):
    """Feature-gating view, derived purely from the stored record.

    `isActive` is false for `cancelled`; such a user still passes the
    access gate (is_access_active) until subscriptionEndsAt.
    """
    if record is None:
        return {
            "status": FREE,
            "plan": None,
            "isActive": False,
            "subscriptionEndsAt": None,
            "trialUsedAt": None,
        }
    return {
        "status": record.status,
        "plan": record.plan if record.status in PLAN_STATUSES else None,
        "isActive": is_subscription_active(record, now=now),
        "subscriptionEndsAt": isoformat(record.period_ends_at),
        "trialUsedAt": isoformat(record.trial_consumed_at),
    }


def serialize_record(record):
    """Full record dump for admin/support views."""
    return {
        "userId": record.user_id,
        "status": record.status,
        "plan": record.plan,
        "externalCustomerId": record.external_customer_id,
        "externalSubscriptionId": record.external_subscription_id,
        "periodEndsAt": isoformat(record.period_ends_at),
        "trialConsumedAt": isoformat(record.trial_consumed_at),
        "lastEventAt": isoformat(record.last_event_at),
        "lastSyncedAt": isoformat(record.last_synced_at),
        "lastSyncAttemptAt": isoformat(record.last_sync_attempt_at),
        "version": record.version,
        "isActive": is_subscription_active(record),
        "hasAccess": is_access_active(record),
    }
