"""Shared test fixtures for the StudyDeck billing test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- gateway: in-memory stand-in for the provider gateway
- seed_data: admin user, a free user and a paying user
- make_user / login helpers
"""

from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from studydeck_billing import create_app
from studydeck_billing.extensions import db as _db
from studydeck_billing.models.subscription import SubscriptionRecord
from studydeck_billing.models.user import User
from studydeck_billing.services.provider_gateway import (
    CancelOutcome,
    ProviderSubscriptionView,
    ProviderUnavailable,
)

PASSWORD = "password123"
ORIGIN = {"Origin": "http://localhost"}


class FakeGateway:
    """Provider gateway double: views keyed by subscription id.

    A view set to ProviderUnavailable (the class) simulates an outage.
    """

    def __init__(self):
        self.views = {}
        self.cancel_outcome = CancelOutcome.CANCELLED
        self.portal_url = "https://billing.stripe.test/session/abc"
        self.cancelled = []
        self.retrieved = []

    def retrieve_subscription(self, external_subscription_id):
        self.retrieved.append(external_subscription_id)
        view = self.views.get(external_subscription_id)
        if view is ProviderUnavailable:
            raise ProviderUnavailable("connection reset")
        return view

    def resolve_customer_id(self, external_subscription_id):
        view = self.retrieve_subscription(external_subscription_id)
        return view.customer_id if view else None

    def cancel_subscription(self, external_subscription_id):
        self.cancelled.append(external_subscription_id)
        return self.cancel_outcome

    def create_portal_url(self, external_customer_id, return_url):
        return self.portal_url if external_customer_id else None


def make_view(sub_id="sub_paid", customer_id="cus_paid", status="active",
              period_end=None, plan="monthly", cancel_at_period_end=False):
    return ProviderSubscriptionView(
        id=sub_id,
        customer_id=customer_id,
        status=status,
        current_period_end=period_end,
        plan_identifier=f"price_{plan}_test" if plan else None,
        plan=plan,
        cancel_at_period_end=cancel_at_period_end,
    )


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def gateway(app):
    """Swap the app's provider gateway for a FakeGateway for one test."""
    original = app.extensions["provider_gateway"]
    fake = FakeGateway()
    app.extensions["provider_gateway"] = fake
    yield fake
    app.extensions["provider_gateway"] = original


@pytest.fixture
def make_user(db_session):
    """Factory: create a user plus a subscription record in one commit."""

    def _make_user(email, is_admin=False, **record_fields):
        user = User(
            email=email,
            password_hash=generate_password_hash(PASSWORD),
            full_name=email.split("@")[0].title(),
            is_admin=is_admin,
        )
        _db.session.add(user)
        _db.session.flush()
        record = SubscriptionRecord(user_id=user.id, **record_fields)
        _db.session.add(record)
        _db.session.commit()
        return user

    return _make_user


@pytest.fixture
def seed_data(make_user):
    """Admin, a free user and an active monthly subscriber.

    Returns plain IDs alongside objects so tests can use them even when
    objects are expired after a commit.
    """
    now = datetime.now(timezone.utc)
    admin = make_user("admin@studydeck.test", is_admin=True)
    free_user = make_user("free@studydeck.test")
    paid_user = make_user(
        "paid@studydeck.test",
        status="active",
        plan="monthly",
        external_customer_id="cus_paid",
        external_subscription_id="sub_paid",
        period_ends_at=now + timedelta(days=20),
        trial_consumed_at=now - timedelta(days=40),
    )
    return {
        "admin": admin,
        "admin_id": admin.id,
        "free_user": free_user,
        "free_user_id": free_user.id,
        "paid_user": paid_user,
        "paid_user_id": paid_user.id,
    }


def login(client, email, password=PASSWORD):
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.data
    return resp


def get_record_for(user_id):
    _db.session.expire_all()
    return SubscriptionRecord.query.filter_by(user_id=user_id).first()
