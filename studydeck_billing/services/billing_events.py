"""Billing events — typed view of verified Stripe webhook events.

Every verified event is parsed into exactly one of the dataclasses below.
Anything we do not recognise (or cannot find the identifiers for) becomes
an UnknownEvent; parsing never raises on payload shape.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from studydeck_billing.services.provider_gateway import view_from_subscription
from studydeck_billing.services.subscription_state import (
    ACTIVE,
    CANCELLED,
    EXPIRED,
    PAST_DUE_GRACE,
    TRIALING,
    map_provider_status,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATE_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.resumed",
)


@dataclass(frozen=True)
class EventBase:
    event_key: str
    event_type: str
    created_at: datetime | None


@dataclass(frozen=True)
class _SubscriptionEvent(EventBase):
    # ProviderSubscriptionView of the embedded subscription object
    subscription: object
    metadata_user_id: str | None


@dataclass(frozen=True)
class SubscriptionActivated(_SubscriptionEvent):
    pass


@dataclass(frozen=True)
class SubscriptionCancelled(_SubscriptionEvent):
    pass


@dataclass(frozen=True)
class TrialEnded(_SubscriptionEvent):
    pass


@dataclass(frozen=True)
class SubscriptionExpired(_SubscriptionEvent):
    pass


@dataclass(frozen=True)
class SubscriptionPastDue(_SubscriptionEvent):
    pass


@dataclass(frozen=True)
class _InvoiceEvent(EventBase):
    invoice_id: str | None
    subscription_id: str | None
    customer_id: str | None


@dataclass(frozen=True)
class PaymentFailed(_InvoiceEvent):
    pass


@dataclass(frozen=True)
class PaymentSucceeded(_InvoiceEvent):
    pass


@dataclass(frozen=True)
class UnknownEvent(EventBase):
    reason: str = ""


# ──────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────

def event_key_for(event, raw_body):
    """Dedup key: the provider event id, else a hash of the raw body."""
    event_id = event.get("id") if hasattr(event, "get") else None
    if event_id:
        return event_id
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return "sha256:" + hashlib.sha256(raw_body or b"").hexdigest()


def _created_at(event):
    ts = event.get("created")
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _invoice_subscription_id(invoice):
    sub_id = invoice.get("subscription")
    if isinstance(sub_id, str) and sub_id:
        return sub_id
    if sub_id and hasattr(sub_id, "get"):
        return sub_id.get("id")
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


_SUBSCRIPTION_CLASSES = {
    ACTIVE: SubscriptionActivated,
    TRIALING: SubscriptionActivated,
    CANCELLED: SubscriptionCancelled,
    PAST_DUE_GRACE: SubscriptionPastDue,
    EXPIRED: SubscriptionExpired,
}


def _parse_subscription(base, obj, app_config):
    view = view_from_subscription(obj, app_config)
    if not view.id:
        return UnknownEvent(**base, reason="subscription object without id")

    metadata = obj.get("metadata") or {}
    fields = dict(base, subscription=view, metadata_user_id=metadata.get("user_id"))
    event_type = base["event_type"]

    if event_type == "customer.subscription.paused":
        return TrialEnded(**fields)
    if event_type == "customer.subscription.deleted":
        return SubscriptionExpired(**fields)

    local_status = map_provider_status(view.status, view.cancel_at_period_end)
    cls = _SUBSCRIPTION_CLASSES.get(local_status)
    if cls is None:
        return UnknownEvent(**base, reason=f"unmapped subscription status {view.status!r}")
    return cls(**fields)


def _parse_invoice(base, obj):
    sub_id = _invoice_subscription_id(obj)
    customer = obj.get("customer")
    if customer is not None and not isinstance(customer, str):
        customer = customer.get("id")
    if not sub_id and not customer:
        return UnknownEvent(**base, reason="invoice without subscription or customer")

    fields = dict(base, invoice_id=obj.get("id"), subscription_id=sub_id, customer_id=customer)
    if base["event_type"] == "invoice.payment_failed":
        return PaymentFailed(**fields)
    return PaymentSucceeded(**fields)


def parse_event(event, raw_body, app_config):
    """Turn a verified Stripe event into one typed billing event."""
    base = {
        "event_key": event_key_for(event, raw_body),
        "event_type": (event.get("type") or "") if hasattr(event, "get") else "",
        "created_at": _created_at(event) if hasattr(event, "get") else None,
    }
    try:
        obj = event["data"]["object"]
    except (KeyError, TypeError):
        return UnknownEvent(**base, reason="missing data.object")
    if not hasattr(obj, "get"):
        return UnknownEvent(**base, reason="data.object is not an object")

    event_type = base["event_type"]
    try:
        if event_type in SUBSCRIPTION_STATE_EVENTS or event_type in (
            "customer.subscription.paused",
            "customer.subscription.deleted",
        ):
            return _parse_subscription(base, obj, app_config)
        if event_type in ("invoice.payment_failed", "invoice.paid", "invoice.payment_succeeded"):
            return _parse_invoice(base, obj)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed {event_type} payload {base['event_key']}: {e}")
        return UnknownEvent(**base, reason="malformed payload")

    return UnknownEvent(**base, reason="unhandled event type")
