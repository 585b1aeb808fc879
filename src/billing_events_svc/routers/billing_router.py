import logging
import math
from datetime import datetime
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from billing_events_svc.checkout import CheckoutSessionInitiator
from billing_events_svc.config import Settings, get_settings
from billing_events_svc.events import parse_event
from billing_events_svc.models.base import get_db, utcnow
from billing_events_svc.models.subscription import SubscriptionStatus
from billing_events_svc.price_catalog import PriceCatalog
from billing_events_svc.record_store import RecordStore
from billing_events_svc.stripe_event_processor import process_event
from billing_events_svc.stripe_integration import StripeIntegration, WebhookAuthenticator
from billing_events_svc.subscription_reconciler import SubscriptionReconciler
from billing_events_svc.trial_eligibility import TrialEligibilityChecker

router = APIRouter()


# Dependencies

def get_store(db: Session = Depends(get_db)) -> RecordStore:
    return RecordStore(db)


@lru_cache
def get_price_catalog() -> PriceCatalog:
    return PriceCatalog.from_settings(get_settings())


@lru_cache
def get_stripe_integration() -> StripeIntegration:
    return StripeIntegration.from_settings(get_settings())


def get_webhook_authenticator(settings: Settings = Depends(get_settings)) -> WebhookAuthenticator:
    if not settings.stripe_webhook_secret:
        logging.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook.")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe endpoint secret not configured")
    return WebhookAuthenticator(settings.stripe_webhook_secret, settings.webhook_tolerance_seconds)


# Schemas

class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tier: Optional[str] = None
    billing_period: Optional[str] = Field(None, alias="billingPeriod")
    owner_id: Optional[str] = Field(None, alias="ownerId")
    email: Optional[str] = None


class SubscriptionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    external_subscription_ref: str
    tier: str
    status: str
    billing_period: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None


def _trial_days_remaining(subscription, now: datetime) -> int:
    if subscription.status != SubscriptionStatus.TRIALING.value or subscription.current_period_end is None:
        return 0
    remaining = (subscription.current_period_end - now).total_seconds() / 86400
    return max(0, math.ceil(remaining))


# Routes

def _handle_webhook(
    payload_bytes: bytes,
    signature_header: Optional[str],
    authenticator: WebhookAuthenticator,
    store: RecordStore,
    settings: Settings,
) -> dict:
    authenticated = authenticator.authenticate(payload_bytes, signature_header)
    event = parse_event(authenticated)
    outcome = process_event(event, store, settings)
    return {"received": True, "type": event.type, "outcome": outcome.value}


@router.post("/webhook", status_code=200)
async def process_webhook(
    request: Request,
    store: RecordStore = Depends(get_store),
    authenticator: WebhookAuthenticator = Depends(get_webhook_authenticator),
    settings: Settings = Depends(get_settings),
):
    # The raw body has to be awaited; the database work then runs in the threadpool.
    payload_bytes = await request.body()
    return await run_in_threadpool(
        _handle_webhook,
        payload_bytes,
        request.headers.get("Stripe-Signature"),
        authenticator,
        store,
        settings,
    )


@router.post("/checkout", status_code=200)
def create_checkout_session(
    checkout_request: CheckoutRequest,
    store: RecordStore = Depends(get_store),
    catalog: PriceCatalog = Depends(get_price_catalog),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    initiator = CheckoutSessionInitiator(
        catalog,
        TrialEligibilityChecker(store),
        stripe_integration,
        settings.site_url,
        settings.trial_period_days,
    )
    session = initiator.initiate(
        checkout_request.tier,
        checkout_request.billing_period,
        owner_id=checkout_request.owner_id,
        email=checkout_request.email,
    )
    return {"sessionId": session.session_id, "redirectUrl": session.redirect_url}


@router.get("/subscriptions/{owner_id}", status_code=200)
def get_subscription(
    owner_id: str,
    store: RecordStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    now = utcnow()
    subscription = SubscriptionReconciler(store, settings.past_due_grace_days).current_state(owner_id, now)
    if subscription is None:
        return {"owner_id": owner_id, "effective_tier": "free", "trial_days_remaining": 0, "subscription": None}
    live = not SubscriptionStatus(subscription.status).is_terminal
    return {
        "owner_id": owner_id,
        "effective_tier": subscription.tier if live else "free",
        "trial_days_remaining": _trial_days_remaining(subscription, now),
        "subscription": SubscriptionView.model_validate(subscription).model_dump(mode="json"),
    }


@router.delete("/subscriptions/{owner_id}", status_code=200)
def cancel_subscription(
    owner_id: str,
    store: RecordStore = Depends(get_store),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    subscription = SubscriptionReconciler(store, settings.past_due_grace_days).current_state(owner_id)
    if subscription is None or SubscriptionStatus(subscription.status).is_terminal:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription for owner")
    subscription_ref = subscription.external_subscription_ref
    stripe_integration.schedule_cancellation(subscription_ref)
    logging.info(f"Cancellation at period end requested for {subscription_ref} (owner {owner_id}).")
    return {"success": True, "subscription_ref": subscription_ref, "cancel_at_period_end": True}
