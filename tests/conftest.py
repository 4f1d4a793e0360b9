"""Shared test fixtures for the ScanMyScale payments test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off, fake keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_users: two users, one already holding a Stripe customer id
- login: helper that logs a user in through the session cookie
- stripe_sub / stripe_price: builders for Stripe API objects (real SDK objects,
  built with construct_from, so the adapter sees what the SDK returns)
"""

import pytest
import stripe

from scanmyscale import create_app
from scanmyscale.extensions import db as _db
from scanmyscale.models.user import User


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
def seed_users(app, db_session):
    """Two users: Alice (has a Stripe customer) and Bob (no billing yet).

    Returns plain ids so tests can use them across app contexts.
    """
    with app.app_context():
        alice = User(
            email="alice@example.com",
            first_name="Alice",
            last_name="Silva",
            locale="en",
            payment_provider="stripe",
            provider_customer_id="cus_alice",
        )
        bob = User(email="bob@example.com", first_name="Bob", locale="pt-BR")
        _db.session.add_all([alice, bob])
        _db.session.commit()

        return {"alice_id": alice.id, "bob_id": bob.id}


@pytest.fixture
def login(client):
    """Log a user in by writing Flask-Login's session key."""

    def _login(user_id):
        with client.session_transaction() as sess:
            sess["_user_id"] = user_id
            sess["_fresh"] = True

    return _login


@pytest.fixture
def reload_user(db_session):
    """Fresh copy of a user row (requests commit through their own session)."""

    def _reload(user_id):
        db_session.expire_all()
        return db_session.get(User, user_id)

    return _reload


FAKE_KEY = "sk_test_fake"


def make_stripe_sub(
    sub_id="sub_123",
    customer="cus_alice",
    price_id="price_premium_usd_month_test",
    status="active",
    period_end=1798761600,
    cancel_at_period_end=False,
    cancel_at=None,
    metadata=None,
    product_metadata=None,
):
    """A Stripe Subscription as returned by Subscription.retrieve (expanded)."""
    values = {
        "id": sub_id,
        "customer": {"id": customer, "object": "customer"},
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "trial_end": None,
        "metadata": metadata or {},
        "items": {
            "data": [{
                "id": "si_1",
                "current_period_start": period_end - 30 * 86400,
                "current_period_end": period_end,
                "price": {
                    "id": price_id,
                    "currency": "usd",
                    "unit_amount": 299,
                    "lookup_key": None,
                    "recurring": {"interval": "month", "interval_count": 1},
                    "product": {"id": "prod_1", "object": "product", "active": True,
                                "metadata": product_metadata or {}},
                },
            }],
        },
    }
    return stripe.Subscription.construct_from(values, FAKE_KEY)


def make_stripe_price(price_id, currency="usd", amount=299, active=True, interval="month", count=1):
    """A Stripe Price as returned by Price.retrieve(expand=["product"])."""
    values = {
        "id": price_id,
        "active": active,
        "currency": currency,
        "unit_amount": amount,
        "lookup_key": None,
        "recurring": {"interval": interval, "interval_count": count},
        "product": {"id": "prod_1", "object": "product", "active": True, "metadata": {}},
    }
    return stripe.Price.construct_from(values, FAKE_KEY)


@pytest.fixture
def stripe_sub():
    return make_stripe_sub


@pytest.fixture
def stripe_price():
    return make_stripe_price
