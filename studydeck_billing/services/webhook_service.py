"""Stripe webhook processing — verification, dedup and the status state machine.

Responsible for:
- Verifying webhook signatures
- Claiming each event exactly once (provider_events, same transaction)
- Resolving the owning SubscriptionRecord from provider identifiers only
- Applying the per-event transition
- Dispatching notifications and audit entries after the commit

State machine (event -> allowed current statuses -> new status):
    SubscriptionActivated  any                              -> active / trialing
    SubscriptionCancelled  active, trialing                 -> cancelled
    TrialEnded             trialing                         -> expired
    SubscriptionExpired    cancelled, past_due_grace,
                           active, trialing                 -> expired
    SubscriptionPastDue    active                           -> past_due_grace
    PaymentFailed          active                           -> past_due_grace
    PaymentSucceeded       past_due_grace                   -> active
Anything else is acknowledged and recorded without touching the record.
"""

import logging
from dataclasses import dataclass, field

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from studydeck_billing.extensions import db
from studydeck_billing.models.provider_event import ProviderEvent
from studydeck_billing.models.user import User
from studydeck_billing.services import notification_service
from studydeck_billing.services.audit_service import record_audit
from studydeck_billing.services.billing_events import (
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionPastDue,
    TrialEnded,
    UnknownEvent,
    parse_event,
)
from studydeck_billing.services.subscription_state import (
    ACTIVE,
    CANCELLED,
    EXPIRED,
    FREE,
    PAST_DUE_GRACE,
    TRIALING,
    as_utc,
    derive_state,
    state_differs,
)
from studydeck_billing.services.subscription_store import (
    apply_transition,
    find_by_customer_id,
    find_by_subscription_id,
    get_record,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


def verify_webhook_signature(payload, sig_header):
    """Verify the Stripe webhook signature and return the parsed event.

    Raises stripe.error.SignatureVerificationError or ValueError on failure.
    """
    return stripe.Webhook.construct_event(
        payload,
        sig_header,
        current_app.config["STRIPE_WEBHOOK_SECRET"],
        tolerance=current_app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300),
    )


@dataclass
class _Result:
    outcome: str
    record: object = None
    audit_action: str | None = None
    followups: list = field(default_factory=list)


# ──────────────────────────────────────────────
# Owner resolution
# ──────────────────────────────────────────────

def _resolve_record(subscription_id, customer_id, metadata_user_id=None):
    """Find the target record via provider identifiers.

    The metadata user_id is written server-side at checkout and arrives in
    the signed payload, so it is trusted as a last resort. A record already
    linked to another customer is never re-bound.
    """
    record = find_by_subscription_id(subscription_id) or find_by_customer_id(customer_id)

    if record is None and metadata_user_id:
        user = db.session.get(User, metadata_user_id)
        if user is not None:
            record = get_record(user.id)

    if record is None:
        return None

    if (
        customer_id
        and record.external_customer_id
        and record.external_customer_id != customer_id
    ):
        logger.warning(
            f"Event customer {customer_id} does not match record customer "
            f"{record.external_customer_id} for user {record.user_id} — ignoring"
        )
        return None
    return record


def _is_stale(record, created_at):
    """True if the event predates what we already know about the record."""
    if created_at is None:
        return False
    watermarks = [
        w for w in (as_utc(record.last_event_at), as_utc(record.last_synced_at)) if w
    ]
    return bool(watermarks) and created_at < max(watermarks)


def _with_watermark(patch, event):
    if event.created_at is not None:
        patch["last_event_at"] = event.created_at
    return patch


# ──────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────

def _on_activated(event, record):
    view = event.subscription
    patch = derive_state(view, record)
    if patch is None:
        return _Result("ignored", record)

    is_new_subscription = (
        record.status in (FREE, EXPIRED) or record.external_subscription_id != view.id
    )
    _with_watermark(patch, event)
    changed = state_differs(record, patch)
    apply_transition(record, patch)

    result = _Result("applied" if changed else "ignored", record)
    if changed:
        result.audit_action = f"subscription.{patch['status']}"
    if is_new_subscription:
        result.followups.append(notification_service.send_welcome)
    return result


def _on_cancelled(event, record):
    if record.status == CANCELLED:
        # Already cancelled locally (e.g. portal fallback); still confirm by email.
        apply_transition(record, _with_watermark({}, event))
        result = _Result("ignored", record)
        result.followups.append(notification_service.send_cancellation)
        return result

    if record.status not in (ACTIVE, TRIALING):
        apply_transition(record, _with_watermark({}, event))
        return _Result("ignored", record)

    # Access continues until the current period ends; plan and period stay.
    patch = {"status": CANCELLED}
    if record.period_ends_at is None and event.subscription.current_period_end:
        patch["period_ends_at"] = event.subscription.current_period_end
    apply_transition(record, _with_watermark(patch, event))

    result = _Result("applied", record, audit_action="subscription.cancelled")
    result.followups.append(notification_service.send_cancellation)
    return result


def _to_expired(event, record, allowed):
    if record.status not in allowed:
        apply_transition(record, _with_watermark({}, event))
        return _Result("ignored", record)
    # plan and ids are kept; the normalization job demotes to free later
    apply_transition(record, _with_watermark({"status": EXPIRED}, event))
    return _Result("applied", record, audit_action="subscription.expired")


def _on_trial_ended(event, record):
    return _to_expired(event, record, (TRIALING,))


def _on_expired(event, record):
    return _to_expired(event, record, (CANCELLED, PAST_DUE_GRACE, ACTIVE, TRIALING))


def _on_past_due(event, record):
    if record.status != ACTIVE:
        apply_transition(record, _with_watermark({}, event))
        return _Result("ignored", record)
    apply_transition(record, _with_watermark({"status": PAST_DUE_GRACE}, event))
    return _Result("applied", record, audit_action="subscription.past_due_grace")


def _on_payment_failed(event, record):
    result = _Result("ignored", record)
    if record.status == ACTIVE:
        apply_transition(record, {"status": PAST_DUE_GRACE})
        result = _Result("applied", record, audit_action="payment.failed")

    if record.status == PAST_DUE_GRACE:
        key = notification_service.payment_failed_key(
            event.subscription_id or record.external_subscription_id or f"user_{record.user_id}",
            invoice_id=event.invoice_id,
            occurred_at=event.created_at,
        )
        result.followups.append(
            lambda user, rec: notification_service.send_payment_failed(user, key)
        )
    return result


def _on_payment_succeeded(event, record):
    if record.status != PAST_DUE_GRACE:
        return _Result("ignored", record)
    apply_transition(record, {"status": ACTIVE})
    return _Result("applied", record, audit_action="payment.recovered")


_SUBSCRIPTION_HANDLERS = {
    SubscriptionActivated: _on_activated,
    SubscriptionCancelled: _on_cancelled,
    TrialEnded: _on_trial_ended,
    SubscriptionExpired: _on_expired,
    SubscriptionPastDue: _on_past_due,
}

_INVOICE_HANDLERS = {
    PaymentFailed: _on_payment_failed,
    PaymentSucceeded: _on_payment_succeeded,
}


def _dispatch(event):
    """Route a parsed event to its handler. Runs inside the open transaction."""
    if isinstance(event, UnknownEvent):
        logger.info(f"Unhandled event {event.event_type} ({event.event_key}): {event.reason}")
        return _Result("unknown")

    handler = _SUBSCRIPTION_HANDLERS.get(type(event))
    if handler is not None:
        view = event.subscription
        record = _resolve_record(view.id, view.customer_id, event.metadata_user_id)
        if record is None:
            logger.warning(f"No subscription record for {event.event_type} ({view.id})")
            return _Result("ignored")
        if _is_stale(record, event.created_at):
            logger.info(f"Stale {event.event_type} {event.event_key} for user {record.user_id}")
            return _Result("stale", record)
        return handler(event, record)

    handler = _INVOICE_HANDLERS[type(event)]
    record = _resolve_record(event.subscription_id, event.customer_id)
    if record is None:
        logger.warning(f"No subscription record for {event.event_type} ({event.subscription_id})")
        return _Result("ignored")
    return handler(event, record)


def _already_claimed(event_key):
    return ProviderEvent.query.filter_by(event_key=event_key).first() is not None


def _claim_and_apply(event):
    """Claim the event and apply its transition in one transaction."""
    claim = ProviderEvent(event_key=event.event_key, event_type=event.event_type or "unknown")
    db.session.add(claim)
    db.session.flush()  # unique violation here means a concurrent delivery won

    result = _dispatch(event)
    claim.outcome = result.outcome
    db.session.commit()
    return result


def _run_followups(result):
    record = result.record
    if record is None:
        return
    user_id = record.user_id

    if result.audit_action:
        record_audit(
            result.audit_action,
            user_id=user_id,
            resource_id=record.external_subscription_id,
            metadata={"status": record.status, "plan": record.plan},
        )

    for followup in result.followups:
        user = db.session.get(User, user_id)
        if user is None:
            return
        try:
            followup(user, record)
        except Exception:
            logger.error(f"Notification after webhook failed for user {user_id}", exc_info=True)


def handle_webhook_event(event, raw_body):
    """Process a verified Stripe event.

    Returns (success, message). success=False only for storage failures,
    which the route turns into a 500 so Stripe retries the delivery.
    """
    parsed = parse_event(event, raw_body, current_app.config)

    if _already_claimed(parsed.event_key):
        logger.info(f"Event {parsed.event_key} already processed — skipping")
        return True, "already_processed"

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            result = _claim_and_apply(parsed)
        except IntegrityError:
            db.session.rollback()
            if _already_claimed(parsed.event_key):
                logger.info(f"Event {parsed.event_key} claimed concurrently — skipping")
                return True, "already_processed"
            logger.warning(
                f"Integrity conflict on {parsed.event_key} (attempt {attempt}), retrying"
            )
        except StaleDataError:
            db.session.rollback()
            logger.warning(
                f"Concurrent update on {parsed.event_key} (attempt {attempt}), retrying"
            )
        except (SQLAlchemyError, ValueError):
            db.session.rollback()
            logger.error(f"Error processing webhook {parsed.event_key}", exc_info=True)
            return False, "Internal processing error"
        else:
            _run_followups(result)
            logger.info(f"Event {parsed.event_key} ({parsed.event_type}): {result.outcome}")
            return True, result.outcome

    logger.error(f"Giving up on {parsed.event_key} after {MAX_ATTEMPTS} attempts")
    return False, "Concurrent update conflict"
