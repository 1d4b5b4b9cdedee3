"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database (shared single connection),
rebuilt from the models before every test. Redis is disabled, and the Stripe
API is replaced by FakeGateway; webhook bodies are signed with the real
Stripe signature scheme against WEBHOOK_SECRET.
"""
import asyncio
import copy
import os
import sys

from fixtures.stripe_fixtures import WEBHOOK_SECRET

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["SENTRY_DSN"] = ""
os.environ["LOG_FORMAT"] = "text"
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["STRIPE_PRICE_MONTHLY_ID"] = "price_monthly_test"
os.environ["STRIPE_PRICE_ANNUAL_ID"] = "price_annual_test"
os.environ["BILLING_REJECT_STALE_EVENTS"] = "false"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
import stripe

from core.database import Base, SessionLocal, engine
from main import app
from routers.billing import get_billing_gateway
from services.billing.gateway import CheckoutSessionResult


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class FakeGateway:
    """
    In-memory stand-in for StripeGateway.

    Subscriptions are served from `subscriptions`; created checkout sessions
    and cancellations are recorded for assertions.
    """

    def __init__(self):
        self.subscriptions = {}
        self.promotion_codes = {}
        self.checkout_sessions = {}
        self.sessions = []
        self.cancelled = []
        self.retrieve_calls = 0
        self.retrieved_on_event_loop = []

    def retrieve_subscription(self, subscription_id):
        self.retrieve_calls += 1
        self.retrieved_on_event_loop.append(_on_event_loop())
        if subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.checkout_sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return copy.deepcopy(self.checkout_sessions[session_id])

    def find_promotion_code(self, code):
        return self.promotion_codes.get(code)

    def create_checkout_session(self, params):
        self.sessions.append(copy.deepcopy(params))
        n = len(self.sessions)
        return CheckoutSessionResult(url=f"https://checkout.stripe.test/c/pay/cs_test_{n}", session_id=f"cs_test_{n}")

    def cancel_subscription(self, subscription_id, *, at_period_end=True):
        self.cancelled.append((subscription_id, at_period_end))
        return {"id": subscription_id, "cancel_at_period_end": at_period_end}


@pytest.fixture(autouse=True)
def _fresh_schema():
    """Every test starts from empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    """
    A session for seeding and asserting.

    Commit seeded rows before calling the API (the app uses its own session
    on the same connection), and call db.expire_all() before reading back.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_gateway():
    """FakeGateway wired into the billing router."""
    gateway = FakeGateway()
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    return gateway
