"""Tests for the subscription blueprint (/api/subscription/*, /api/notifications/*).

Covers:
- Feature-gating read (local only, no provider call)
- Cancellation: direct, unsupported (portal fallback), failed, not allowed
- Origin allow-list on mutations
- On-demand sync, trial eligibility, payment-failure notification
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from conftest import ORIGIN, get_record_for, login, make_view
from studydeck_billing.services.provider_gateway import CancelOutcome
from studydeck_billing.services.subscription_state import is_access_active

SEND_EMAIL = "studydeck_billing.services.notification_service.send_email"


class TestGatingRead:

    def test_requires_login(self, client, seed_data):
        resp = client.get("/api/subscription")
        assert resp.status_code == 401
        assert resp.get_json() == {"error": "Unauthorized"}

    def test_paid_user_view(self, client, seed_data, gateway):
        login(client, "paid@studydeck.test")
        resp = client.get("/api/subscription")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "active"
        assert data["plan"] == "monthly"
        assert data["isActive"] is True
        assert set(data) == {"status", "plan", "isActive", "subscriptionEndsAt", "trialUsedAt"}
        assert gateway.retrieved == []  # never calls the provider

    def test_cancelled_user_is_not_active_but_keeps_access(self, client, make_user):
        ends_at = datetime.now(timezone.utc) + timedelta(days=5)
        user = make_user("leaving@studydeck.test", status="cancelled", plan="monthly",
                         external_subscription_id="sub_leaving", period_ends_at=ends_at)
        login(client, "leaving@studydeck.test")

        data = client.get("/api/subscription").get_json()

        assert data["status"] == "cancelled"
        assert data["isActive"] is False
        assert data["subscriptionEndsAt"] is not None
        assert is_access_active(get_record_for(user.id))

    def test_free_user_view(self, client, seed_data):
        login(client, "free@studydeck.test")
        data = client.get("/api/subscription").get_json()
        assert data["status"] == "free"
        assert data["isActive"] is False


class TestCancel:

    @patch(SEND_EMAIL)
    def test_direct_cancel_keeps_access_until_period_end(self, mock_send, client,
                                                         seed_data, gateway):
        login(client, "paid@studydeck.test")
        resp = client.post("/api/subscription/cancel", headers=ORIGIN)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["accessEndsAt"] is not None
        assert gateway.cancelled == ["sub_paid"]

        record = get_record_for(seed_data["paid_user_id"])
        assert record.status == "cancelled"
        assert is_access_active(record)
        assert mock_send.call_args.kwargs["template"] == "emails/cancellation.html"

    @patch(SEND_EMAIL)
    def test_unsupported_cancel_updates_locally_with_portal_fallback(self, mock_send, client,
                                                                     seed_data, gateway):
        gateway.cancel_outcome = CancelOutcome.UNSUPPORTED
        login(client, "paid@studydeck.test")
        resp = client.post("/api/subscription/cancel", headers=ORIGIN)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["pendingConfirmation"] is True
        assert "provider confirms" in data["note"]
        assert data["portalUrl"] == gateway.portal_url
        assert get_record_for(seed_data["paid_user_id"]).status == "cancelled"
        mock_send.assert_not_called()

    def test_failed_cancel_changes_nothing(self, client, seed_data, gateway):
        gateway.cancel_outcome = CancelOutcome.FAILED
        login(client, "paid@studydeck.test")
        resp = client.post("/api/subscription/cancel", headers=ORIGIN)

        assert resp.status_code == 502
        data = resp.get_json()
        assert data["success"] is False
        assert data["portalUrl"] == gateway.portal_url
        assert get_record_for(seed_data["paid_user_id"]).status == "active"

    def test_free_user_cannot_cancel(self, client, seed_data, gateway):
        login(client, "free@studydeck.test")
        resp = client.post("/api/subscription/cancel", headers=ORIGIN)
        assert resp.status_code == 400
        assert gateway.cancelled == []

    @patch(SEND_EMAIL)
    def test_cancel_is_idempotent(self, mock_send, client, seed_data, gateway):
        login(client, "paid@studydeck.test")
        client.post("/api/subscription/cancel", headers=ORIGIN)
        resp = client.post("/api/subscription/cancel", headers=ORIGIN)

        assert resp.status_code == 200
        assert gateway.cancelled == ["sub_paid"]
        assert mock_send.call_count == 1

    def test_cross_origin_cancel_is_rejected(self, client, seed_data, gateway):
        login(client, "paid@studydeck.test")
        resp = client.post("/api/subscription/cancel",
                           headers={"Origin": "https://evil.example"})

        assert resp.status_code == 403
        assert gateway.cancelled == []
        assert get_record_for(seed_data["paid_user_id"]).status == "active"

    def test_missing_origin_is_rejected(self, client, seed_data, gateway):
        login(client, "paid@studydeck.test")
        assert client.post("/api/subscription/cancel").status_code == 403

    @patch(SEND_EMAIL)
    def test_configured_extra_origin_and_referer_are_allowed(self, mock_send, client,
                                                             seed_data, gateway):
        login(client, "paid@studydeck.test")
        resp = client.post(
            "/api/subscription/cancel",
            headers={"Referer": "https://app.studydeck.test/settings/billing"},
        )
        assert resp.status_code == 200


class TestSyncAndEligibility:

    def test_sync_reconciles_current_user(self, client, seed_data, gateway):
        gateway.views["sub_paid"] = make_view(status="past_due")
        login(client, "paid@studydeck.test")

        resp = client.post("/api/subscription/sync", headers=ORIGIN)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["outcome"] == "synced"
        assert data["subscription"]["status"] == "past_due_grace"

    def test_sync_transient_failure_is_reported_not_applied(self, client, seed_data, gateway):
        from studydeck_billing.services.provider_gateway import ProviderUnavailable

        gateway.views["sub_paid"] = ProviderUnavailable
        login(client, "paid@studydeck.test")
        data = client.post("/api/subscription/sync", headers=ORIGIN).get_json()

        assert data["success"] is False
        assert data["outcome"] == "transient_failure"
        assert data["subscription"]["status"] == "active"

    def test_trial_eligibility(self, client, seed_data):
        login(client, "free@studydeck.test")
        assert client.get("/api/subscription/trial-eligibility").get_json() == {"eligible": True}

        client.post("/auth/logout")
        login(client, "paid@studydeck.test")
        assert client.get("/api/subscription/trial-eligibility").get_json() == {"eligible": False}


class TestPaymentFailureNotification:

    @patch(SEND_EMAIL)
    def test_one_email_per_user_per_day(self, mock_send, client, seed_data):
        login(client, "paid@studydeck.test")

        first = client.post("/api/notifications/payment-failure", headers=ORIGIN)
        second = client.post("/api/notifications/payment-failure", headers=ORIGIN)

        assert first.get_json() == {"success": True, "sent": True}
        assert second.get_json() == {"success": True, "sent": False}
        assert mock_send.call_count == 1
        assert mock_send.call_args.kwargs["template"] == "emails/payment_failed.html"
