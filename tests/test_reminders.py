"""Tests for renewal / trial-ending reminders.

Covers:
- Date-bucketed windows per day offset
- At most one reminder per (user, offset, date) across repeated runs
- Kind selection (trial_ending vs reminder)
- Dry run writes nothing
- CLI command
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from studydeck_billing.models.sent_notification import SentNotification
from studydeck_billing.services.reminder_service import (
    day_window,
    parse_offsets,
    process_reminders,
)

SEND = "studydeck_billing.services.reminder_service.send_email_sync"
NOW = datetime(2026, 5, 10, 9, 0, tzinfo=timezone.utc)


class TestHelpers:

    def test_parse_offsets(self):
        assert parse_offsets("3,7") == [3, 7]
        assert parse_offsets(" 7, 3 ,,x,0,3") == [3, 7]
        assert parse_offsets(None) == []

    def test_day_window_is_utc_calendar_day(self):
        start, end = day_window(NOW.date())
        assert start == datetime(2026, 5, 10, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)


class TestReminderWindows:

    @patch(SEND)
    def test_trial_ending_in_two_days_matches_no_offset(self, mock_send, make_user):
        make_user("trial@studydeck.test", status="trialing",
                  external_subscription_id="sub_trial",
                  trial_consumed_at=NOW - timedelta(days=12),
                  period_ends_at=NOW + timedelta(days=2))

        summary = process_reminders(now=NOW)

        assert summary["sent"] == 0
        mock_send.assert_not_called()

    @patch(SEND)
    def test_trial_ending_in_three_days_sends_once_per_day(self, mock_send, make_user):
        make_user("trial@studydeck.test", status="trialing",
                  external_subscription_id="sub_trial",
                  trial_consumed_at=NOW - timedelta(days=11),
                  period_ends_at=NOW + timedelta(days=3))

        first = process_reminders(now=NOW)
        second = process_reminders(now=NOW + timedelta(hours=6))

        assert first["sent"] == 1
        assert second["sent"] == 0
        assert mock_send.call_count == 1
        assert mock_send.call_args.kwargs["template"] == "emails/trial_ending.html"
        key = f"trial_ending:sub_trial:d3:{(NOW + timedelta(days=3)).date().isoformat()}"
        assert SentNotification.query.filter_by(key=key).count() == 1

    @patch(SEND)
    def test_period_end_anywhere_in_target_day_matches(self, mock_send, make_user):
        late_on_target_day = datetime.combine(
            (NOW + timedelta(days=7)).date(), datetime.max.time(), tzinfo=timezone.utc
        ) - timedelta(seconds=1)
        make_user("paid@studydeck.test", status="active", plan="yearly",
                  external_subscription_id="sub_year", period_ends_at=late_on_target_day)

        summary = process_reminders(now=NOW)

        assert summary["sent"] == 1
        assert mock_send.call_args.kwargs["template"] == "emails/renewal_reminder.html"

    @patch(SEND, return_value=False)
    def test_refused_delivery_is_not_counted_and_not_retried(self, mock_send, make_user):
        make_user("paid@studydeck.test", status="active", external_subscription_id="sub_p",
                  period_ends_at=NOW + timedelta(days=3))

        first = process_reminders(now=NOW)
        second = process_reminders(now=NOW + timedelta(hours=1))

        assert first["sent"] == 0
        assert first["results"][0]["sent"] is False
        assert second["sent"] == 0
        assert mock_send.call_count == 1
        assert SentNotification.query.count() == 1

    @patch(SEND)
    def test_cancelled_and_free_users_get_no_reminder(self, mock_send, make_user):
        make_user("c@studydeck.test", status="cancelled", external_subscription_id="sub_c",
                  period_ends_at=NOW + timedelta(days=3))
        make_user("f@studydeck.test", status="free", period_ends_at=NOW + timedelta(days=3))

        assert process_reminders(now=NOW)["sent"] == 0
        mock_send.assert_not_called()

    @patch(SEND)
    def test_dry_run_sends_and_records_nothing(self, mock_send, make_user):
        make_user("paid@studydeck.test", status="active", external_subscription_id="sub_p",
                  period_ends_at=NOW + timedelta(days=3))

        summary = process_reminders(dry_run=True, now=NOW)

        assert summary["dryRun"] is True
        assert summary["sent"] == 1
        mock_send.assert_not_called()
        assert SentNotification.query.count() == 0


class TestReminderCli:

    @patch(SEND)
    def test_cli_dry_run(self, mock_send, app, make_user):
        make_user("paid@studydeck.test", status="active", external_subscription_id="sub_p",
                  period_ends_at=datetime.now(timezone.utc) + timedelta(days=3))

        result = app.test_cli_runner().invoke(args=["send-subscription-reminders", "--dry-run"])

        assert result.exit_code == 0
        assert "WOULD SEND" in result.output
        mock_send.assert_not_called()
