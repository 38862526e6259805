"""Provider gateway — every call to the payment provider (Stripe) goes here.

Responsible for:
- Retrieving the provider's current view of a subscription
- Resolving the customer ID behind a subscription (lazy backfill)
- Cancelling a subscription (at period end)
- Creating hosted customer-portal sessions (cancellation fallback)

Failure contract:
- Network, timeout, auth, permission, rate-limit and provider 5xx errors
  raise ProviderUnavailable. Callers treat that as "no information" and
  never as a state signal.
- A subscription the provider does not know returns None.

One gateway (wrapping one explicitly configured StripeClient) is created
per application in create_app() and stored in
app.extensions["provider_gateway"]; nothing here touches the module-level
`stripe.api_key`.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe
from flask import current_app

from studydeck_billing.services.subscription_state import MONTHLY, YEARLY

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    stripe.error.APIConnectionError,
    stripe.error.AuthenticationError,
    stripe.error.PermissionError,
    stripe.error.RateLimitError,
    stripe.error.APIError,
)


class ProviderUnavailable(Exception):
    """The provider could not be reached or refused us; no information."""


class CancelOutcome(enum.Enum):
    CANCELLED = "cancelled"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderSubscriptionView:
    """The provider's current view of one subscription. Never persisted."""

    id: str
    customer_id: str | None
    status: str
    current_period_end: datetime | None
    plan_identifier: str | None
    plan: str | None
    cancel_at_period_end: bool = False


# ──────────────────────────────────────────────
# Payload helpers (shared with webhook parsing)
# ──────────────────────────────────────────────

def _first_item(sub_data):
    items = sub_data.get("items")
    if items and items.get("data") and len(items["data"]) > 0:
        return items["data"][0]
    return None


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get("current_period_end")

    if not ts:
        item = _first_item(sub_data)
        if item:
            ts = item.get("current_period_end")

    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def extract_price(sub_data):
    """Return (price_id, recurring_interval) for the first subscription item."""
    item = _first_item(sub_data)
    if not item:
        return None, None
    price = item.get("price") or {}
    recurring = price.get("recurring") or {}
    return price.get("id"), recurring.get("interval")


def plan_from_price(price_id, interval, app_config):
    """Map a price to monthly / yearly.

    Configured price IDs win; otherwise the recurring interval decides.
    Returns None if neither matches.
    """
    if price_id and price_id == app_config.get("STRIPE_MONTHLY_PRICE_ID"):
        return MONTHLY
    if price_id and price_id == app_config.get("STRIPE_YEARLY_PRICE_ID"):
        return YEARLY
    interval = (interval or "").lower()
    if interval == "year":
        return YEARLY
    if interval == "month":
        return MONTHLY
    return None


def _customer_id(value):
    # `customer` is an ID string unless the caller expanded it.
    if isinstance(value, str) or value is None:
        return value
    return value.get("id")


def view_from_subscription(sub_data, app_config):
    """Build a ProviderSubscriptionView from a Stripe subscription object."""
    price_id, interval = extract_price(sub_data)
    return ProviderSubscriptionView(
        id=sub_data.get("id"),
        customer_id=_customer_id(sub_data.get("customer")),
        status=sub_data.get("status") or "",
        current_period_end=extract_period_end(sub_data),
        plan_identifier=price_id,
        plan=plan_from_price(price_id, interval, app_config),
        # Stripe uses cancel_at_period_end OR cancel_at (a future timestamp)
        # to indicate the subscription is set to cancel.
        cancel_at_period_end=bool(
            sub_data.get("cancel_at_period_end", False)
            or sub_data.get("cancel_at") is not None
        ),
    )


def _is_missing(error):
    return (
        getattr(error, "http_status", None) == 404
        or getattr(error, "code", None) == "resource_missing"
    )


# ──────────────────────────────────────────────
# Gateway
# ──────────────────────────────────────────────

class ProviderGateway:
    """Thin wrapper over a StripeClient with the failure contract above."""

    def __init__(self, client, app_config, direct_cancel_enabled=True):
        self.client = client
        self.app_config = app_config
        self.direct_cancel_enabled = direct_cancel_enabled

    @classmethod
    def from_config(cls, app_config):
        """Build the per-process gateway from Flask config."""
        client = stripe.StripeClient(
            app_config.get("STRIPE_SECRET_KEY") or "",
            http_client=stripe.RequestsClient(
                timeout=app_config.get("PROVIDER_TIMEOUT_SECONDS", 10)
            ),
            max_network_retries=0,
        )
        return cls(
            client,
            app_config,
            direct_cancel_enabled=app_config.get("PROVIDER_DIRECT_CANCEL_ENABLED", True),
        )

    def retrieve_subscription(self, external_subscription_id):
        """Return a ProviderSubscriptionView, or None if the provider has no such subscription.

        Raises ProviderUnavailable on transient failures.
        """
        try:
            sub = self.client.subscriptions.retrieve(external_subscription_id)
        except stripe.error.InvalidRequestError as e:
            if _is_missing(e):
                logger.info(f"Provider has no subscription {external_subscription_id}")
                return None
            raise ProviderUnavailable(str(e)) from e
        except _TRANSIENT_ERRORS as e:
            logger.warning(
                f"Provider unavailable retrieving {external_subscription_id}: {e}"
            )
            raise ProviderUnavailable(str(e)) from e
        return view_from_subscription(sub, self.app_config)

    def resolve_customer_id(self, external_subscription_id):
        """Return the customer ID that owns a subscription, or None.

        Raises ProviderUnavailable on transient failures.
        """
        view = self.retrieve_subscription(external_subscription_id)
        if view is None:
            return None
        return view.customer_id

    def cancel_subscription(self, external_subscription_id):
        """Schedule cancellation at period end.

        Returns CancelOutcome.CANCELLED, UNSUPPORTED (caller should fall back
        to the hosted portal) or FAILED. Never raises for provider errors.
        """
        if not self.direct_cancel_enabled:
            return CancelOutcome.UNSUPPORTED

        try:
            self.client.subscriptions.update(
                external_subscription_id,
                params={"cancel_at_period_end": True},
            )
        except stripe.error.InvalidRequestError as e:
            # Subscriptions driven by a schedule can only be changed through
            # the schedule (or the hosted portal).
            if "subscription schedule" in str(e).lower():
                logger.info(
                    f"Direct cancel unsupported for {external_subscription_id}: {e}"
                )
                return CancelOutcome.UNSUPPORTED
            logger.error(f"Provider rejected cancel for {external_subscription_id}: {e}")
            return CancelOutcome.FAILED
        except _TRANSIENT_ERRORS as e:
            logger.warning(
                f"Provider unavailable cancelling {external_subscription_id}: {e}"
            )
            return CancelOutcome.FAILED
        return CancelOutcome.CANCELLED

    def create_portal_url(self, external_customer_id, return_url):
        """Create a hosted customer-portal session and return its URL (or None)."""
        if not external_customer_id:
            return None
        try:
            session = self.client.billing_portal.sessions.create(
                params={"customer": external_customer_id, "return_url": return_url}
            )
        except (stripe.error.InvalidRequestError,) + _TRANSIENT_ERRORS as e:
            logger.warning(f"Portal session failed for {external_customer_id}: {e}")
            return None
        return session.url


def get_provider_gateway():
    """Return the gateway bound to the current app."""
    return current_app.extensions["provider_gateway"]
