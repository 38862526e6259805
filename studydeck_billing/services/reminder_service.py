"""Reminder service — renewal and trial-ending emails before period end.

For each day offset in REMINDER_DAY_OFFSETS (default 3 and 7 days before
period_ends_at):
  - compute the target calendar date (UTC) = today + offset
  - select active / trialing records whose period ends on that date
  - send through the notification dispatcher

Keys are built from (kind, subscription, offset, target date), so the job
can fire any number of times a day and each user still gets at most one
email per offset.

Called from `flask send-subscription-reminders` and the cron endpoint.
"""

import logging
from datetime import datetime, time, timedelta, timezone

from flask import current_app

from studydeck_billing.models.subscription import SubscriptionRecord
from studydeck_billing.services.email_service import send_email_sync
from studydeck_billing.services.job_guard import (
    claim_job_run,
    finish_job_run,
    skipped_summary,
)
from studydeck_billing.services.notification_service import (
    reminder_key,
    send_if_not_sent,
    was_sent,
)
from studydeck_billing.services.subscription_state import (
    ACTIVE,
    TRIALING,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

REMINDER_JOB = "subscription_reminders"

REMINDER_SUBJECTS = {
    "trial_ending": "Your StudyDeck trial ends in {days} days",
    "reminder": "Your StudyDeck subscription renews in {days} days",
}

REMINDER_TEMPLATES = {
    "trial_ending": "emails/trial_ending.html",
    "reminder": "emails/renewal_reminder.html",
}


def parse_offsets(raw):
    """"3,7" -> [3, 7]. Ignores blanks and non-positive values."""
    offsets = []
    for part in str(raw or "").split(","):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            offsets.append(int(part))
    return sorted(set(offsets))


def day_window(target_date):
    """[00:00, next 00:00) UTC for a calendar date."""
    start = datetime.combine(target_date, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _due_records(target_date):
    start, end = day_window(target_date)
    return (
        SubscriptionRecord.query
        .filter(SubscriptionRecord.status.in_([ACTIVE, TRIALING]))
        .filter(SubscriptionRecord.period_ends_at >= start)
        .filter(SubscriptionRecord.period_ends_at < end)
        .all()
    )


def _send_reminder(record, kind, offset):
    user = record.user
    return send_email_sync(
        to=user.email,
        subject=REMINDER_SUBJECTS[kind].format(days=offset),
        template=REMINDER_TEMPLATES[kind],
        context={
            "name": user.full_name or user.email.split("@")[0],
            "days": offset,
            "plan": record.plan,
            "period_ends_at": as_utc(record.period_ends_at),
            "billing_url": f"{current_app.config['APP_BASE_URL'].rstrip('/')}/settings/billing",
        },
    )


def process_reminders(dry_run=False, now=None):
    """Send due reminders. Returns a JSON-able summary.

    Args:
        dry_run: If True, report what would be sent without sending or
                 writing ledger entries (and without claiming the job run).
    """
    config = current_app.config
    now = now or utcnow()

    if not dry_run and not claim_job_run(
        REMINDER_JOB, config.get("REMINDER_MIN_INTERVAL_SECONDS", 0), now=now
    ):
        return skipped_summary()

    results = []
    sent = 0
    for offset in parse_offsets(config.get("REMINDER_DAY_OFFSETS", "3,7")):
        target_date = (now + timedelta(days=offset)).date()
        for record in _due_records(target_date):
            kind = "trial_ending" if record.status == TRIALING else "reminder"
            key = reminder_key(kind, record, offset, target_date)
            email = record.user.email

            if dry_run:
                would_send = not was_sent(key)
                sent += int(would_send)
                results.append({"userId": record.user_id, "key": key, "sent": would_send})
                continue

            delivered = send_if_not_sent(
                key,
                kind,
                email,
                lambda r=record, k=kind, o=offset: _send_reminder(r, k, o),
            )
            sent += int(delivered)
            results.append({"userId": record.user_id, "key": key, "sent": delivered})

    summary = {
        "success": True,
        "dryRun": dry_run,
        "checked": len(results),
        "sent": sent,
        "results": results,
    }
    if not dry_run:
        finish_job_run(REMINDER_JOB, {"checked": len(results), "sent": sent})
    logger.info(
        f"{'[DRY RUN] ' if dry_run else ''}Reminders: {sent} of {len(results)} due sent"
    )
    return summary
