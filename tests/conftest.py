import os

os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ['STRIPE_API_KEY'] = 'sk_test_dummy'
os.environ['STRIPE_PRICE_ID'] = 'price_test'
os.environ['STRIPE_ENDPOINT_SECRET'] = 'whsec_test'
os.environ['JWT_SECRET'] = 'test-jwt-secret'

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lms_subscription_svc.app import app
from lms_subscription_svc.errors import NotFoundError, ProviderError
from lms_subscription_svc.models import account, subscription  # noqa: F401
from lms_subscription_svc.models.account import Account
from lms_subscription_svc.models.base import Base, get_db
from lms_subscription_svc.models.subscription import Subscription
from lms_subscription_svc.routers.subscription_router import get_provider
from lms_subscription_svc.stripe_integration import StripeIntegration

WEBHOOK_SECRET = 'whsec_test'


class FakeStripe(StripeIntegration):
    """Stripe client double: API calls are served from in-memory dicts,
    webhook signature verification is the real one."""

    def __init__(self):
        super().__init__()
        self.sessions = {}
        self.subscriptions = {}
        self.created_sessions = []
        self.canceled = []
        self.fail_subscription_fetch = False
        self.before_subscription_return = None

    def create_checkout_session(self, email, account_id, success_url, cancel_url):
        session_id = f"cs_test_{len(self.created_sessions) + 1}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "mode": "subscription",
            "status": "open",
            "payment_status": "unpaid",
            "customer": None,
            "subscription": None,
            "metadata": {"userId": account_id, "role": "parent"},
        }
        self.created_sessions.append({"email": email, "account_id": account_id,
                                      "success_url": success_url, "cancel_url": cancel_url})
        self.sessions[session_id] = session
        return session

    def get_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise NotFoundError(f"Checkout session {session_id} not found.")
        return self.sessions[session_id]

    def get_subscription(self, subscription_id):
        if self.fail_subscription_fetch:
            raise ProviderError("Failed to retrieve subscription: connection error")
        result = dict(self.subscriptions[subscription_id])
        if self.before_subscription_return is not None:
            hook, self.before_subscription_return = self.before_subscription_return, None
            hook()
        return result

    def cancel_subscription(self, subscription_id):
        self.canceled.append(subscription_id)
        sub = self.subscriptions.get(subscription_id, {})
        return {"id": subscription_id, "cancel_at_period_end": True,
                "current_period_end": sub.get("current_period_end")}


def ts(value: datetime) -> int:
    return int(value.timestamp())


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}, "created": 1700000000}


def as_payload(event: dict) -> str:
    return json.dumps(event)


@pytest.fixture
def db_session():
    engine = create_engine('sqlite://', connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def client(db_session, fake_stripe):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: fake_stripe
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_parent(db_session):
    def _make_parent(email='parent@example.com', role='parent', status='inactive',
                     subscription_id=None, customer_id=None, start_date=None,
                     current_period_end=None, created_at=None, is_active=True):
        parent = Account(name='Parent', email=email, password_hash='x', role=role, is_active=is_active)
        if created_at is not None:
            parent.created_at = created_at
        parent.subscription = Subscription(
            status=status,
            stripe_subscription_id=subscription_id,
            stripe_customer_id=customer_id,
            start_date=start_date,
            current_period_end=current_period_end,
        )
        db_session.add(parent)
        db_session.commit()
        return parent
    return _make_parent
