"""Tests for subscription state rules and the record store.

Covers:
- Access mapping (status x period end), independent of writer
- Provider status mapping and trial single-use resolution
- apply_transition validation, trial stamping, optimistic locking
- Administrative reset (row kept, trial marker optional)
- Gating serialisation
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import text
from sqlalchemy.orm.exc import StaleDataError

from conftest import get_record_for, make_view
from studydeck_billing.extensions import db
from studydeck_billing.models.subscription import SubscriptionRecord
from studydeck_billing.services.subscription_state import (
    as_utc,
    derive_state,
    is_access_active,
    is_subscription_active,
    map_provider_status,
)
from studydeck_billing.services.subscription_store import (
    apply_transition,
    get_record,
    reset_subscription,
    serialize_gating,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(status, period_ends_at=None, trial_consumed_at=None, plan="monthly"):
    return SimpleNamespace(
        status=status,
        period_ends_at=period_ends_at,
        trial_consumed_at=trial_consumed_at,
        plan=plan,
    )


class TestAccessMapping:

    @pytest.mark.parametrize("status", ["trialing", "active", "past_due_grace", "cancelled"])
    def test_access_statuses_grant_until_period_end(self, status):
        assert is_access_active(_record(status, NOW + timedelta(hours=1)), now=NOW)
        assert is_access_active(_record(status, None), now=NOW)
        assert not is_access_active(_record(status, NOW - timedelta(seconds=1)), now=NOW)

    @pytest.mark.parametrize("status", ["free", "expired"])
    def test_no_access_statuses_never_grant(self, status):
        assert not is_access_active(_record(status, NOW + timedelta(days=30)), now=NOW)
        assert not is_access_active(_record(status, None), now=NOW)

    def test_naive_datetimes_from_sqlite_are_treated_as_utc(self):
        naive = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert is_access_active(_record("active", naive), now=NOW)

    def test_missing_record_has_no_access(self):
        assert not is_access_active(None)


class TestSubscriptionActivity:

    @pytest.mark.parametrize("status", ["trialing", "active", "past_due_grace"])
    def test_renewing_statuses_are_active_until_period_end(self, status):
        assert is_subscription_active(_record(status, NOW + timedelta(hours=1)), now=NOW)
        assert is_subscription_active(_record(status, None), now=NOW)
        assert not is_subscription_active(_record(status, NOW - timedelta(seconds=1)), now=NOW)

    @pytest.mark.parametrize("status", ["free", "expired", "cancelled"])
    def test_other_statuses_are_never_active(self, status):
        assert not is_subscription_active(_record(status, NOW + timedelta(days=5)), now=NOW)
        assert not is_subscription_active(_record(status, None), now=NOW)

    def test_cancelled_keeps_access_without_being_active(self):
        record = _record("cancelled", NOW + timedelta(days=5))
        assert is_access_active(record, now=NOW)
        assert not is_subscription_active(record, now=NOW)


class TestProviderMapping:

    @pytest.mark.parametrize("provider, cancel, expected", [
        ("trialing", False, "trialing"),
        ("active", False, "active"),
        ("active", True, "cancelled"),
        ("trialing", True, "cancelled"),
        ("past_due", False, "past_due_grace"),
        ("paused", False, "expired"),
        ("canceled", False, "expired"),
        ("unpaid", False, "expired"),
        ("incomplete_expired", False, "expired"),
        ("incomplete", False, None),
        ("something_new", False, None),
    ])
    def test_status_table(self, provider, cancel, expected):
        assert map_provider_status(provider, cancel) == expected

    def test_trialing_view_becomes_active_once_trial_used(self):
        record = _record("free", trial_consumed_at=NOW - timedelta(days=60))
        patch = derive_state(make_view(status="trialing"), record)
        assert patch["status"] == "active"

    def test_current_trial_stays_trialing(self):
        record = _record("trialing", trial_consumed_at=NOW - timedelta(days=2))
        patch = derive_state(make_view(status="trialing"), record)
        assert patch["status"] == "trialing"

    def test_view_without_plan_or_period_keeps_stored_values(self):
        record = _record("active", period_ends_at=NOW, plan="yearly")
        patch = derive_state(make_view(plan=None, period_end=None), record)
        assert patch["plan"] == "yearly"
        assert patch["period_ends_at"] == NOW

    def test_unmapped_status_yields_no_patch(self):
        assert derive_state(make_view(status="incomplete"), _record("free")) is None


class TestRecordStore:

    def test_get_record_creates_free_record_once(self, make_user):
        user = make_user("new@studydeck.test")
        db.session.delete(get_record(user.id))
        db.session.commit()

        first = get_record(user.id)
        db.session.commit()
        second = get_record(user.id)

        assert first.id == second.id
        assert first.status == "free"
        assert SubscriptionRecord.query.filter_by(user_id=user.id).count() == 1

    def test_get_record_without_create(self, make_user):
        user = make_user("none@studydeck.test")
        db.session.delete(get_record(user.id))
        db.session.commit()
        assert get_record(user.id, create=False) is None

    def test_entering_trial_stamps_consumption_atomically(self, make_user):
        user = make_user("t@studydeck.test")
        record = get_record(user.id)
        apply_transition(record, {"status": "trialing", "plan": "monthly"})
        db.session.commit()

        record = get_record_for(user.id)
        assert record.status == "trialing"
        assert record.trial_consumed_at is not None

    def test_rejects_unknown_status_and_fields(self, make_user):
        record = get_record(make_user("v@studydeck.test").id)
        with pytest.raises(ValueError):
            apply_transition(record, {"status": "gold"})
        with pytest.raises(ValueError):
            apply_transition(record, {"plan": "weekly"})
        with pytest.raises(ValueError):
            apply_transition(record, {"user_id": "someone-else"})

    def test_concurrent_writer_raises_stale_data(self, make_user, app):
        user = make_user("race@studydeck.test", status="active", plan="monthly")
        record = get_record(user.id)

        # Another writer bumps the version behind this session's back
        db.session.execute(
            text("UPDATE subscription_records SET version = version + 1 WHERE user_id = :u"),
            {"u": user.id},
        )

        with pytest.raises(StaleDataError):
            apply_transition(record, {"status": "cancelled"})
        db.session.rollback()

    def test_reset_keeps_row_and_trial_marker(self, seed_data):
        record = get_record(seed_data["paid_user_id"])
        record_id = record.id
        reset_subscription(record)
        db.session.commit()

        record = get_record_for(seed_data["paid_user_id"])
        assert record.id == record_id
        assert record.status == "free"
        assert record.plan is None
        assert record.period_ends_at is None
        assert record.external_customer_id is None
        assert record.external_subscription_id is None
        assert record.trial_consumed_at is not None

    def test_reset_can_clear_trial_marker(self, seed_data):
        reset_subscription(get_record(seed_data["paid_user_id"]), reset_trial=True)
        db.session.commit()
        assert get_record_for(seed_data["paid_user_id"]).trial_consumed_at is None


class TestGatingSerialisation:

    def test_active_subscriber(self, seed_data):
        data = serialize_gating(get_record(seed_data["paid_user_id"]))
        assert data["status"] == "active"
        assert data["plan"] == "monthly"
        assert data["isActive"] is True
        assert data["subscriptionEndsAt"] is not None
        assert data["trialUsedAt"] is not None

    def test_expired_record_hides_plan(self, make_user):
        user = make_user(
            "gone@studydeck.test",
            status="expired",
            plan="yearly",
            period_ends_at=datetime.now(timezone.utc) - timedelta(days=1),
        )
        data = serialize_gating(get_record(user.id))
        assert data["status"] == "expired"
        assert data["plan"] is None
        assert data["isActive"] is False

    def test_no_record(self):
        assert serialize_gating(None) == {
            "status": "free",
            "plan": None,
            "isActive": False,
            "subscriptionEndsAt": None,
            "trialUsedAt": None,
        }

    def test_period_end_round_trips_as_utc(self, seed_data):
        record = get_record(seed_data["paid_user_id"])
        assert serialize_gating(record)["subscriptionEndsAt"] == as_utc(
            record.period_ends_at
        ).isoformat()
