import time

import pytest
import stripe

from billing_events_svc.errors import AuthenticationError, UpstreamError
from billing_events_svc.stripe_integration import StripeIntegration, WebhookAuthenticator
from conftest import WEBHOOK_SECRET, sign_payload


class FakeStripe:
    """A fake stripe module to simulate API calls."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def create_session(self, api_key=None, **params):
        self.calls.append(("create", api_key, params))
        if self.error:
            raise self.error
        return {"id": "cs_test_123", "url": "https://checkout.stripe.test/cs_test_123"}

    def modify(self, subscription_id, api_key=None, **update_data):
        self.calls.append(("modify", api_key, subscription_id, update_data))
        if self.error:
            raise self.error
        updated = {"id": subscription_id}
        updated.update(update_data)
        return updated


@pytest.fixture
def stripe_integration():
    return StripeIntegration(api_key="sk_test_dummy", timeout=5.0)


def test_client_fails_fast():
    StripeIntegration(api_key="sk_test_dummy", timeout=5.0)
    assert stripe.max_network_retries == 0


def test_create_checkout_session_success(monkeypatch, stripe_integration):
    fake_stripe = FakeStripe()
    monkeypatch.setattr(stripe.checkout, "Session", type("FakeSession", (), {"create": fake_stripe.create_session}))

    session = stripe_integration.create_checkout_session({"mode": "subscription", "line_items": []})

    assert session["id"] == "cs_test_123"
    assert fake_stripe.calls == [("create", "sk_test_dummy", {"mode": "subscription", "line_items": []})]


def test_create_checkout_session_stripe_error(monkeypatch, stripe_integration, caplog):
    fake_stripe = FakeStripe(error=stripe.InvalidRequestError("No such price: 'price_gone'", param="price"))
    monkeypatch.setattr(stripe.checkout, "Session", type("FakeSession", (), {"create": fake_stripe.create_session}))

    with pytest.raises(UpstreamError) as excinfo:
        stripe_integration.create_checkout_session({"mode": "subscription"})

    assert excinfo.value.status_code == 502
    assert "No such price" in excinfo.value.message
    assert len(fake_stripe.calls) == 1
    assert "Error creating checkout session" in caplog.text


def test_create_checkout_session_without_key():
    with pytest.raises(UpstreamError, match="Stripe secret key not configured"):
        StripeIntegration(api_key=None).create_checkout_session({})


def test_schedule_cancellation(monkeypatch, stripe_integration):
    fake_stripe = FakeStripe()
    monkeypatch.setattr(stripe, "Subscription", type("FakeSubscription", (), {"modify": fake_stripe.modify}))

    result = stripe_integration.schedule_cancellation("sub_test")

    assert result == {"id": "sub_test", "cancel_at_period_end": True}


def test_schedule_cancellation_connection_error(monkeypatch, stripe_integration):
    fake_stripe = FakeStripe(error=stripe.APIConnectionError("Simulated connection error"))
    monkeypatch.setattr(stripe, "Subscription", type("FakeSubscription", (), {"modify": fake_stripe.modify}))

    with pytest.raises(UpstreamError):
        stripe_integration.schedule_cancellation("sub_test")
    assert len(fake_stripe.calls) == 1


def test_authenticate_valid_signature():
    payload = '{"id": "evt_1", "type": "invoice.paid"}'
    authenticator = WebhookAuthenticator(WEBHOOK_SECRET)

    authenticated = authenticator.authenticate(payload.encode("utf-8"), sign_payload(payload))

    assert authenticated.raw_body == payload.encode("utf-8")


def test_authenticate_missing_header():
    with pytest.raises(AuthenticationError, match="Missing Stripe-Signature header"):
        WebhookAuthenticator(WEBHOOK_SECRET).authenticate(b"{}", None)


def test_authenticate_wrong_secret(caplog):
    payload = '{"id": "evt_1"}'

    with pytest.raises(AuthenticationError, match="Invalid signature"):
        WebhookAuthenticator(WEBHOOK_SECRET).authenticate(payload.encode("utf-8"), sign_payload(payload, "whsec_other"))
    assert "signature verification failed" in caplog.text


def test_authenticate_tampered_body():
    header = sign_payload('{"amount": 100}')

    with pytest.raises(AuthenticationError):
        WebhookAuthenticator(WEBHOOK_SECRET).authenticate(b'{"amount": 1}', header)


def test_authenticate_stale_timestamp():
    payload = '{"id": "evt_1"}'
    header = sign_payload(payload, timestamp=int(time.time()) - 600)

    with pytest.raises(AuthenticationError):
        WebhookAuthenticator(WEBHOOK_SECRET, tolerance=300).authenticate(payload.encode("utf-8"), header)


def test_authenticate_garbage_header():
    with pytest.raises(AuthenticationError):
        WebhookAuthenticator(WEBHOOK_SECRET).authenticate(b"{}", "not-a-signature")
