"""Notification dispatcher — at-most-once billing emails.

Responsible for:
- The idempotency ledger (sent_notifications, unique on `key`)
- Deterministic key builders for every billing email
- Sending welcome / cancellation / payment-failed emails through the ledger

Ordering: the ledger row is committed BEFORE the email is sent. If the
send then fails, the row stays and the email is not retried; a duplicate
email is worse than a missing one here.

Callers must commit their own pending work before dispatching, because
the ledger insert commits (and a duplicate key rolls back) the session.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from studydeck_billing.extensions import db
from studydeck_billing.models.sent_notification import SentNotification
from studydeck_billing.services.email_service import send_email
from studydeck_billing.services.subscription_state import as_utc

logger = logging.getLogger(__name__)


def send_if_not_sent(key, event_kind, recipient, send_fn):
    """Claim `key` in the ledger and call send_fn() only if the claim is new.

    Returns True if send_fn ran without raising or returning False. Returns
    False for an already-claimed key, a ledger failure (fail closed) or a
    send failure; a failed send keeps its ledger entry.
    """
    entry = SentNotification(key=key, event_kind=event_kind, recipient=recipient)
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Notification {key} already sent — skipping")
        return False
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"Notification ledger unavailable for {key} — not sending", exc_info=True)
        return False

    try:
        delivered = send_fn()
    except Exception:
        logger.error(f"Notification {key} recorded but send failed", exc_info=True)
        return False
    if delivered is False:
        logger.warning(f"Notification {key} recorded but not delivered")
        return False
    return True


def was_sent(key):
    return SentNotification.query.filter_by(key=key).first() is not None


# ──────────────────────────────────────────────
# Keys (stable identifiers only, never wall-clock now)
# ──────────────────────────────────────────────

def welcome_key(subscription_id):
    return f"welcome:{subscription_id}"


def cancellation_key(subscription_id, period_ends_at):
    ends = as_utc(period_ends_at)
    return f"cancellation:{subscription_id}:{ends.date().isoformat() if ends else 'none'}"


def payment_failed_key(subscription_id, invoice_id=None, occurred_at=None):
    if invoice_id:
        return f"payment_failed:{subscription_id}:{invoice_id}"
    occurred_at = as_utc(occurred_at)
    day = occurred_at.date().isoformat() if occurred_at else "unknown"
    return f"payment_failed:{subscription_id}:{day}"


def reminder_key(kind, record, offset_days, target_date):
    subject = record.external_subscription_id or f"user_{record.user_id}"
    return f"{kind}:{subject}:d{offset_days}:{target_date.isoformat()}"


# ──────────────────────────────────────────────
# Emails
# ──────────────────────────────────────────────

def _display_name(user):
    return user.full_name or user.email.split("@")[0]


def _app_link(path=""):
    from flask import current_app

    return f"{current_app.config['APP_BASE_URL'].rstrip('/')}{path}"


def send_welcome(user, record):
    key = welcome_key(record.external_subscription_id or f"user_{user.id}")
    return send_if_not_sent(
        key,
        "welcome",
        user.email,
        lambda: send_email(
            to=user.email,
            subject="Welcome to StudyDeck Pro",
            template="emails/welcome.html",
            context={
                "name": _display_name(user),
                "plan": record.plan,
                "trialing": record.status == "trialing",
                "period_ends_at": as_utc(record.period_ends_at),
                "app_url": _app_link(),
            },
        ),
    )


def send_cancellation(user, record):
    key = cancellation_key(
        record.external_subscription_id or f"user_{user.id}", record.period_ends_at
    )
    return send_if_not_sent(
        key,
        "cancellation",
        user.email,
        lambda: send_email(
            to=user.email,
            subject="Your StudyDeck subscription has been cancelled",
            template="emails/cancellation.html",
            context={
                "name": _display_name(user),
                "access_ends_at": as_utc(record.period_ends_at),
                "app_url": _app_link(),
            },
        ),
    )


def send_payment_failed(user, key):
    return send_if_not_sent(
        key,
        "payment_failed",
        user.email,
        lambda: send_email(
            to=user.email,
            subject="Your StudyDeck payment didn't go through",
            template="emails/payment_failed.html",
            context={
                "name": _display_name(user),
                "billing_url": _app_link("/settings/billing"),
            },
        ),
    )
