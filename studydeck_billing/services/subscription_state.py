"""Subscription state rules — statuses, access mapping, provider mapping.

Pure functions only (no database, no network) so that webhook ingestion,
reconciliation and the read endpoint all apply exactly the same rules.

Access mapping (feature gate):
    trialing / active / past_due_grace / cancelled -> access while
        period_ends_at is null or in the future
    free / expired                                 -> no access

Subscription activity (the `isActive` flag clients see):
    trialing / active / past_due_grace -> active while the period runs
    cancelled keeps access but is no longer an active subscription

Provider (Stripe) status mapping:
    trialing / active + cancel scheduled -> cancelled
    trialing                             -> trialing (active if trial already used)
    active                               -> active
    past_due                             -> past_due_grace
    paused                               -> expired (trial ended, no payment method)
    canceled / unpaid / incomplete_expired -> expired
    incomplete / anything else           -> None (no information)
"""

from datetime import datetime, timezone

FREE = "free"
TRIALING = "trialing"
ACTIVE = "active"
PAST_DUE_GRACE = "past_due_grace"
CANCELLED = "cancelled"
EXPIRED = "expired"

MONTHLY = "monthly"
YEARLY = "yearly"

ACCESS_STATUSES = (TRIALING, ACTIVE, PAST_DUE_GRACE, CANCELLED)
ACTIVE_STATUSES = (TRIALING, ACTIVE, PAST_DUE_GRACE)
NO_ACCESS_STATUSES = (FREE, EXPIRED)
# Statuses for which `plan` carries meaning.
PLAN_STATUSES = (TRIALING, ACTIVE, PAST_DUE_GRACE, CANCELLED)

_EXPIRED_PROVIDER_STATUSES = ("canceled", "unpaid", "incomplete_expired")


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return a timezone-aware UTC datetime (SQLite hands back naive ones)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def _period_running(record, now=None):
    ends_at = as_utc(record.period_ends_at)
    return ends_at is None or (now or utcnow()) < ends_at


def status_grants_access(status):
    return status in ACCESS_STATUSES


def is_access_active(record, now=None):
    """The access gate.

    True iff the status grants access AND the period has not ended. Holds
    regardless of which path (webhook, reconciliation, cancel) last wrote
    the record.
    """
    if record is None or not status_grants_access(record.status):
        return False
    return _period_running(record, now)


def is_subscription_active(record, now=None):
    """True iff the subscription is renewing (or in grace) and the period runs.

    Unlike is_access_active, a `cancelled` record is not active even though
    it keeps access until period_ends_at.
    """
    if record is None or record.status not in ACTIVE_STATUSES:
        return False
    return _period_running(record, now)


def map_provider_status(provider_status, cancel_scheduled=False):
    """Map a provider subscription status to a local status (or None)."""
    status = (provider_status or "").lower()
    if status in ("trialing", "active"):
        if cancel_scheduled:
            return CANCELLED
        return TRIALING if status == "trialing" else ACTIVE
    if status == "past_due":
        return PAST_DUE_GRACE
    if status == "paused":
        return EXPIRED
    if status in _EXPIRED_PROVIDER_STATUSES:
        return EXPIRED
    return None


def resolve_trial_status(status, record):
    """Enforce trial single-use.

    A record that already consumed its trial may stay in `trialing` while it
    is still trialing, but can never move back into it; it is treated as
    `active` instead.
    """
    if status != TRIALING or record is None:
        return status
    if record.trial_consumed_at is not None and record.status != TRIALING:
        return ACTIVE
    return status


def derive_state(view, record):
    """Compute the full desired record state from a provider view.

    Returns a patch dict for `apply_transition`, or None when the provider
    status carries no usable information (e.g. `incomplete`).
    """
    status = map_provider_status(view.status, view.cancel_at_period_end)
    if status is None:
        return None
    status = resolve_trial_status(status, record)

    patch = {
        "status": status,
        "plan": view.plan or (record.plan if record is not None else None),
        "period_ends_at": view.current_period_end
        or (record.period_ends_at if record is not None else None),
        "external_subscription_id": view.id,
    }
    if view.customer_id:
        patch["external_customer_id"] = view.customer_id
    return patch


def state_differs(record, patch):
    """True if applying `patch` would change any field of `record`."""
    for field, value in patch.items():
        current = getattr(record, field)
        if isinstance(current, datetime) or isinstance(value, datetime):
            if as_utc(current) != as_utc(value):
                return True
        elif current != value:
            return True
    return False
