import asyncio
import json
import time

import stripe

from billing_events_svc.errors import PersistenceError
from billing_events_svc.events import EventOutcome
from billing_events_svc.models.invoice import Invoice
from billing_events_svc.models.processed_event import ProcessedEvent
from billing_events_svc.models.subscription import Subscription
from billing_events_svc.record_store import RecordStore
from billing_events_svc.routers import billing_router
from conftest import sign_payload
from factories import DAY, checkout_session, stripe_event, stripe_invoice, stripe_subscription


def post_event(client, event, secret=None, headers=None):
    payload = json.dumps(event)
    if headers is None:
        headers = {"Stripe-Signature": sign_payload(payload, secret) if secret else sign_payload(payload)}
    return client.post("/api/billing/webhook", content=payload, headers=headers)


def fake_checkout(monkeypatch, error=None):
    calls = []

    def create(api_key=None, **params):
        calls.append(params)
        if error:
            raise error
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    monkeypatch.setattr(stripe.checkout, "Session", type("FakeSession", (), {"create": staticmethod(create)}))
    return calls


def fake_modify(monkeypatch, error=None):
    calls = []

    def modify(subscription_id, api_key=None, **update_data):
        calls.append((subscription_id, update_data))
        if error:
            raise error
        return {"id": subscription_id, **update_data}

    monkeypatch.setattr(stripe, "Subscription", type("FakeSubscription", (), {"modify": staticmethod(modify)}))
    return calls


# Webhook

def test_webhook_processes_checkout(client, db_session):
    response = post_event(client, stripe_event("checkout.session.completed", checkout_session(trial_days=14)))

    assert response.status_code == 200
    assert response.json() == {"received": True, "type": "checkout.session.completed", "outcome": "processed"}
    assert db_session.query(Subscription).one().status == "trialing"


def test_webhook_redelivery_is_acknowledged(client, db_session):
    event = stripe_event("checkout.session.completed", checkout_session())
    post_event(client, event)

    response = post_event(client, event)

    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"
    assert db_session.query(Subscription).count() == 1


def test_webhook_invalid_signature_changes_nothing(client, db_session):
    event = stripe_event("checkout.session.completed", checkout_session())

    response = post_event(client, event, secret="whsec_attacker")

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid signature"}
    assert db_session.query(Subscription).count() == 0
    assert db_session.query(ProcessedEvent).count() == 0


def test_webhook_missing_signature(client):
    response = post_event(client, stripe_event("invoice.paid", stripe_invoice()), headers={})

    assert response.status_code == 400
    assert "Missing Stripe-Signature header" in response.json()["error"]


def test_webhook_secret_not_configured(client, settings):
    settings.stripe_webhook_secret = None

    response = post_event(client, stripe_event("invoice.paid", stripe_invoice()))

    assert response.status_code == 500
    assert response.json()["detail"] == "Stripe endpoint secret not configured"


def test_webhook_malformed_body(client):
    payload = "{not json"
    response = client.post("/api/billing/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON in webhook body"


def test_webhook_unhandled_type(client):
    response = post_event(client, stripe_event("customer.created", {"id": "cus_1"}))

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"


def test_webhook_unprocessable_event_is_acknowledged(client, db_session):
    response = post_event(client, stripe_event("checkout.session.completed", checkout_session(subscription=None)))

    assert response.status_code == 200
    assert response.json()["outcome"] == "unprocessable"
    assert db_session.query(Subscription).count() == 0


def test_webhook_invoice_before_subscription_asks_for_redelivery(client, db_session):
    response = post_event(client, stripe_event("invoice.paid", stripe_invoice(subscription="sub_x", customer="cus_x")))

    assert response.status_code == 500
    assert response.json()["error"] == "Subscription not found for paid invoice"
    assert db_session.query(Invoice).count() == 0
    assert db_session.query(ProcessedEvent).count() == 0


def test_webhook_store_unavailable(client, monkeypatch):
    def unavailable(self, *args, **kwargs):
        raise PersistenceError("Record store unavailable")

    monkeypatch.setattr(RecordStore, "find_by_key", unavailable)

    response = post_event(client, stripe_event("customer.subscription.updated", stripe_subscription()))

    assert response.status_code == 503
    assert response.json() == {"error": "Record store unavailable"}


# Checkout

def test_checkout_success(client, monkeypatch):
    calls = fake_checkout(monkeypatch)

    response = client.post("/api/billing/checkout", json={"tier": "starter", "billingPeriod": "monthly", "ownerId": "u1"})

    assert response.status_code == 200
    assert response.json() == {"sessionId": "cs_test_1", "redirectUrl": "https://checkout.stripe.test/cs_test_1"}
    assert calls[0]["line_items"] == [{"price": "price_starter_monthly", "quantity": 1}]
    assert calls[0]["subscription_data"]["trial_period_days"] == 14


def test_checkout_missing_tier(client, monkeypatch):
    calls = fake_checkout(monkeypatch)

    response = client.post("/api/billing/checkout", json={"billingPeriod": "monthly"})

    assert response.status_code == 400
    assert response.json()["error"] == "Tier and billing period are required"
    assert calls == []


def test_checkout_price_not_configured(client, monkeypatch):
    fake_checkout(monkeypatch)

    response = client.post("/api/billing/checkout", json={"tier": "enterprise", "billingPeriod": "annual"})

    assert response.status_code == 500
    assert response.json()["details"] == {"required_env_var": "STRIPE_PRICE_ENTERPRISE_ANNUAL"}


def test_checkout_stripe_rejects(client, monkeypatch):
    fake_checkout(monkeypatch, error=stripe.InvalidRequestError("No such price: 'price_pro_annual'", param="price"))

    response = client.post("/api/billing/checkout", json={"tier": "professional", "billingPeriod": "annual"})

    assert response.status_code == 502
    assert "No such price" in response.json()["error"]


# Subscription state

def test_get_subscription_for_unknown_owner(client):
    response = client.get("/api/billing/subscriptions/nobody")

    assert response.status_code == 200
    assert response.json() == {"owner_id": "nobody", "effective_tier": "free", "trial_days_remaining": 0,
                               "subscription": None}


def test_get_trialing_subscription(client):
    now = int(time.time())
    post_event(client, stripe_event("checkout.session.completed",
                                    checkout_session(tier="professional", trial_days=14, created=now)))

    data = client.get("/api/billing/subscriptions/u1").json()

    assert data["effective_tier"] == "professional"
    assert data["trial_days_remaining"] == 14
    assert data["subscription"]["status"] == "trialing"
    assert data["subscription"]["external_subscription_ref"] == "sub_1"


def test_get_cancelled_subscription_is_free(client):
    post_event(client, stripe_event("checkout.session.completed", checkout_session(created=int(time.time()))))
    post_event(client, stripe_event("customer.subscription.deleted", stripe_subscription(), event_id="evt_2"))

    data = client.get("/api/billing/subscriptions/u1").json()

    assert data["effective_tier"] == "free"
    assert data["subscription"]["status"] == "cancelled"


def test_get_expires_past_due_after_grace(client):
    now = int(time.time())
    post_event(client, stripe_event("customer.subscription.updated",
                                    stripe_subscription(status="past_due", period_start=now - 40 * DAY,
                                                        period_end=now - 10 * DAY)))

    data = client.get("/api/billing/subscriptions/u1").json()

    assert data["subscription"]["status"] == "expired"
    assert data["effective_tier"] == "free"


def test_cancel_subscription(client, monkeypatch):
    calls = fake_modify(monkeypatch)
    post_event(client, stripe_event("checkout.session.completed", checkout_session()))

    response = client.delete("/api/billing/subscriptions/u1")

    assert response.status_code == 200
    assert response.json() == {"success": True, "subscription_ref": "sub_1", "cancel_at_period_end": True}
    assert calls == [("sub_1", {"cancel_at_period_end": True})]


def test_cancel_without_subscription(client, monkeypatch):
    calls = fake_modify(monkeypatch)

    response = client.delete("/api/billing/subscriptions/u1")

    assert response.status_code == 404
    assert calls == []


def test_cancel_stripe_unreachable(client, monkeypatch):
    fake_modify(monkeypatch, error=stripe.APIConnectionError("Simulated connection error"))
    post_event(client, stripe_event("checkout.session.completed", checkout_session()))

    response = client.delete("/api/billing/subscriptions/u1")

    assert response.status_code == 502


def test_webhook_processing_runs_off_the_event_loop(client, monkeypatch):
    loops_seen = []

    def fake_process_event(event, store, settings):
        try:
            asyncio.get_running_loop()
            loops_seen.append(True)
        except RuntimeError:
            loops_seen.append(False)
        return EventOutcome.IGNORED

    monkeypatch.setattr(billing_router, "process_event", fake_process_event)

    response = post_event(client, stripe_event("customer.created", {"id": "cus_1"}))

    assert response.status_code == 200
    assert loops_seen == [False]
