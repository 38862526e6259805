"""Subscription service — user-initiated subscription operations.

Responsible for:
- Cancellation (provider first, local optimistic update second)
- On-demand sync of the current user's record
- Trial eligibility
- Payment-failure notifications reported by the checkout UI

Return values are (payload, http_status) tuples consumed directly by the
subscription blueprint.
"""

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from studydeck_billing.extensions import db
from studydeck_billing.models.user import User
from studydeck_billing.services import notification_service
from studydeck_billing.services.audit_service import record_audit
from studydeck_billing.services.provider_gateway import CancelOutcome, get_provider_gateway
from studydeck_billing.services.reconciliation_service import reconcile_record
from studydeck_billing.services.subscription_state import (
    ACTIVE,
    CANCELLED,
    TRIALING,
    isoformat,
    utcnow,
)
from studydeck_billing.services.subscription_store import (
    apply_transition,
    get_record,
    serialize_gating,
)

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (ACTIVE, TRIALING)

CANCEL_FAILED_MESSAGE = (
    "We couldn't cancel your subscription right now. Please try again "
    "in a few minutes or manage it from the billing portal."
)
CANCEL_PENDING_NOTE = (
    "Your cancellation has been recorded. Please confirm it in the billing "
    "portal; your final status updates once the payment provider confirms it."
)


def _portal_url(gateway, record):
    return_url = f"{current_app.config['APP_BASE_URL'].rstrip('/')}/settings/billing"
    return gateway.create_portal_url(record.external_customer_id, return_url)


def cancel_subscription(user_id, gateway=None):
    """Cancel the user's subscription at period end.

    Access is not revoked: status becomes `cancelled` and period_ends_at is
    left as the access boundary.
    """
    gateway = gateway or get_provider_gateway()
    record = get_record(user_id, create=False)

    if record is not None and record.status == CANCELLED:
        return {"success": True, "accessEndsAt": isoformat(record.period_ends_at)}, 200

    if (
        record is None
        or record.status not in CANCELLABLE_STATUSES
        or not record.external_subscription_id
    ):
        return {"success": False, "error": "No active subscription to cancel."}, 400

    outcome = gateway.cancel_subscription(record.external_subscription_id)

    if outcome is CancelOutcome.FAILED:
        logger.warning(f"Cancel failed at provider for user {user_id}")
        return {
            "success": False,
            "error": CANCEL_FAILED_MESSAGE,
            "portalUrl": _portal_url(gateway, record),
        }, 502

    try:
        apply_transition(record, {"status": CANCELLED})
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(f"Concurrent update while cancelling for user {user_id}")
        return {"success": False, "error": "Your subscription changed. Please try again."}, 409
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"Storage error cancelling for user {user_id}", exc_info=True)
        return {"success": False, "error": "Internal error"}, 500

    record_audit(
        "subscription.cancel_requested",
        user_id=user_id,
        resource_id=record.external_subscription_id,
        metadata={"outcome": outcome.value},
    )

    payload = {"success": True, "accessEndsAt": isoformat(record.period_ends_at)}

    if outcome is CancelOutcome.UNSUPPORTED:
        payload["pendingConfirmation"] = True
        payload["note"] = CANCEL_PENDING_NOTE
        payload["portalUrl"] = _portal_url(gateway, record)
        return payload, 200

    user = db.session.get(User, user_id)
    try:
        notification_service.send_cancellation(user, record)
    except Exception:
        logger.error(f"Cancellation email failed for user {user_id}", exc_info=True)
    return payload, 200


def sync_user_subscription(user_id, gateway=None):
    """Reconcile the current user's record now (same path as the cron job)."""
    record = get_record(user_id, create=False)
    if record is None:
        return {"success": True, "outcome": "no_record", "subscription": serialize_gating(None)}, 200

    result = reconcile_record(record, gateway=gateway)
    record = get_record(user_id, create=False)
    return {
        "success": result["ok"],
        "outcome": result["outcome"],
        "subscription": serialize_gating(record),
    }, 200


def trial_eligibility(user_id):
    record = get_record(user_id, create=False)
    eligible = record is None or record.trial_consumed_at is None
    return {"eligible": eligible}, 200


def report_payment_failure(user_id):
    """Checkout UI reported a failed payment; email at most once per day."""
    user = db.session.get(User, user_id)
    key = notification_service.payment_failed_key(
        f"ui_{user_id}", occurred_at=utcnow()
    )
    sent = notification_service.send_payment_failed(user, key)
    return {"success": True, "sent": sent}, 200
