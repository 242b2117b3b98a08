import os
os.environ['STRIPE_API_KEY'] = 'sk_test_dummy'

import json

import pytest
import stripe

from conftest import sign_payload
from lms_subscription_svc.config import Settings
from lms_subscription_svc.errors import NotFoundError, ProviderError, ValidationError, WebhookSignatureError
from lms_subscription_svc.stripe_integration import StripeIntegration


class FakeStripe:
    """A fake stripe API surface to simulate calls."""

    def __init__(self):
        self.calls = []

    def create_session(self, **kwargs):
        self.calls.append(('create', kwargs))
        return {"id": "cs_123", "url": "https://checkout.stripe.test/cs_123"}

    def retrieve_session(self, session_id, **kwargs):
        self.calls.append(('retrieve', session_id, kwargs))
        if session_id == 'cs_missing':
            raise stripe.InvalidRequestError('No such checkout.session', 'id',
                                             code='resource_missing', http_status=404)
        if session_id == 'cs_down':
            raise stripe.APIConnectionError('Simulated connection error')
        return {"id": session_id, "status": "complete", "payment_status": "paid"}

    def retrieve_subscription(self, subscription_id):
        self.calls.append(('retrieve_subscription', subscription_id))
        return {"id": subscription_id, "status": "active"}

    def modify(self, subscription_id, **update_data):
        self.calls.append(('modify', subscription_id, update_data))
        updated = {"id": subscription_id}
        updated.update(update_data)
        return updated


@pytest.fixture
def fake_api(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.checkout, 'Session', type('FakeSession', (), {
        'create': staticmethod(fake.create_session),
        'retrieve': staticmethod(fake.retrieve_session),
    }))
    monkeypatch.setattr(stripe, 'Subscription', type('FakeSubscription', (), {
        'retrieve': staticmethod(fake.retrieve_subscription),
        'modify': staticmethod(fake.modify),
    }))
    return fake


@pytest.fixture
def stripe_integration():
    return StripeIntegration(Settings(stripe_api_key='sk_test_dummy', stripe_price_id='price_test'))


def test_create_checkout_session(fake_api, stripe_integration):
    session = stripe_integration.create_checkout_session(
        'a@x.com', 'acct-1', 'https://app.test/success', 'https://app.test/cancel')

    assert session["id"] == "cs_123"
    _, kwargs = fake_api.calls[0]
    assert kwargs["mode"] == 'subscription'
    assert kwargs["customer_email"] == 'a@x.com'
    assert kwargs["line_items"] == [{'price': 'price_test', 'quantity': 1}]
    assert kwargs["metadata"] == {'userId': 'acct-1', 'role': 'parent'}


def test_create_checkout_session_requires_price(fake_api):
    integration = StripeIntegration(Settings(stripe_api_key='sk_test_dummy', stripe_price_id=None))
    with pytest.raises(ProviderError, match='STRIPE_PRICE_ID'):
        integration.create_checkout_session('a@x.com', 'acct-1', 's', 'c')
    assert fake_api.calls == []


def test_unconfigured_stripe_raises_provider_error(fake_api):
    integration = StripeIntegration(Settings(stripe_api_key=None, stripe_price_id='price_test'))
    with pytest.raises(ProviderError, match='not configured'):
        integration.get_subscription('sub_1')


def test_get_checkout_session_expands_subscription(fake_api, stripe_integration):
    session = stripe_integration.get_checkout_session('cs_ok')
    assert session["payment_status"] == "paid"
    assert fake_api.calls[0] == ('retrieve', 'cs_ok', {'expand': ['subscription']})


def test_get_checkout_session_not_found(fake_api, stripe_integration):
    with pytest.raises(NotFoundError):
        stripe_integration.get_checkout_session('cs_missing')


def test_get_checkout_session_connection_error(fake_api, stripe_integration):
    with pytest.raises(ProviderError):
        stripe_integration.get_checkout_session('cs_down')
    # No local retries
    assert len(fake_api.calls) == 1


def test_get_subscription_requires_id(fake_api, stripe_integration):
    with pytest.raises(ValidationError):
        stripe_integration.get_subscription('')


def test_cancel_subscription_at_period_end(fake_api, stripe_integration):
    result = stripe_integration.cancel_subscription('sub_cancel')
    assert result == {"id": "sub_cancel", "cancel_at_period_end": True}
    assert fake_api.calls == [('modify', 'sub_cancel', {'cancel_at_period_end': True})]


def test_stripe_objects_become_plain_dicts(fake_api, stripe_integration, monkeypatch):
    subscription = stripe.StripeObject.construct_from({
        "id": "sub_obj",
        "status": "active",
        "items": {"object": "list", "data": [{"id": "si_1", "current_period_end": 1700000000}]},
    }, 'sk_test_dummy')
    monkeypatch.setattr(stripe.Subscription, 'retrieve', staticmethod(lambda subscription_id: subscription))

    result = stripe_integration.get_subscription('sub_obj')

    assert type(result) is dict
    assert result["status"] == "active"
    assert result["items"]["data"][0]["current_period_end"] == 1700000000


def test_construct_event_valid_signature(stripe_integration):
    payload = json.dumps({"id": "evt_123", "object": "event", "type": "invoice.paid",
                          "data": {"object": {"id": "in_1"}}})
    event = stripe_integration.construct_event(payload.encode(), sign_payload(payload, 'whsec_x'), 'whsec_x')
    assert event["id"] == "evt_123"
    assert event["data"]["object"]["id"] == "in_1"


def test_construct_event_invalid_signature(stripe_integration):
    payload = json.dumps({"id": "evt_123", "object": "event", "type": "invoice.paid"})
    with pytest.raises(WebhookSignatureError) as excinfo:
        stripe_integration.construct_event(payload.encode(), sign_payload(payload, 'whsec_other'), 'whsec_x')
    assert 'signature verification failed' in str(excinfo.value)


def test_construct_event_rejects_tampered_body(stripe_integration):
    payload = json.dumps({"id": "evt_123", "object": "event", "type": "invoice.paid"})
    header = sign_payload(payload, 'whsec_x')
    tampered = payload.replace("evt_123", "evt_999")
    with pytest.raises(WebhookSignatureError):
        stripe_integration.construct_event(tampered.encode(), header, 'whsec_x')
