"""Entitlement middleware — loads the caller's subscription gate.

Runs before every request from an authenticated user.
Sets g.subscription (the SubscriptionRecord or None) and g.has_access.

Skipped entirely for raw-body endpoints (Stripe webhooks, cron), which
must reach their view untouched.
"""

from flask import g, request
from flask_login import current_user

from studydeck_billing.models.subscription import SubscriptionRecord
from studydeck_billing.services.subscription_state import is_access_active

RAW_BODY_PREFIXES = ("/stripe/", "/api/cron/", "/static/")


def resolve_entitlement():
    """Before-request hook. Reads only the local store, never the provider."""
    g.subscription = None
    g.has_access = False

    if request.path.startswith(RAW_BODY_PREFIXES):
        return
    if not current_user.is_authenticated:
        return

    subscription = SubscriptionRecord.query.filter_by(user_id=current_user.id).first()
    g.subscription = subscription
    g.has_access = is_access_active(subscription)


def init_entitlement_middleware(app):
    """Register the entitlement resolver as a before_request hook."""
    app.before_request(resolve_entitlement)
