import logging
from typing import NamedTuple, Optional

from billing_events_svc.errors import ValidationError
from billing_events_svc.models.subscription import BillingPeriod, SubscriptionTier
from billing_events_svc.price_catalog import PriceCatalog
from billing_events_svc.stripe_integration import StripeIntegration
from billing_events_svc.trial_eligibility import TrialEligibilityChecker


class CheckoutSession(NamedTuple):
    session_id: str
    redirect_url: str


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if not value or not value.strip():
        raise ValidationError("Tier and billing period are required", {"field": field})
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown {field}: {value}",
            {"field": field, "allowed": [member.value for member in enum_cls]},
        ) from None


class CheckoutSessionInitiator:
    """
    Builds a hosted subscription checkout for a tier and billing period.

    The metadata written here (tier, billing_period, price_id, owner_id, trial_period_days)
    is what the reconciler later reads back off checkout and subscription events.
    """

    def __init__(
        self,
        catalog: PriceCatalog,
        eligibility: TrialEligibilityChecker,
        stripe_integration: StripeIntegration,
        site_url: str,
        trial_period_days: int = 14,
    ) -> None:
        self.catalog = catalog
        self.eligibility = eligibility
        self.stripe_integration = stripe_integration
        self.site_url = site_url.rstrip("/")
        self.trial_period_days = trial_period_days

    def initiate(
        self,
        tier: Optional[str],
        billing_period: Optional[str],
        owner_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CheckoutSession:
        tier_value = _parse_enum(SubscriptionTier, tier, "tier")
        period_value = _parse_enum(BillingPeriod, billing_period, "billingPeriod")
        price_ref = self.catalog.resolve(tier_value, period_value)

        metadata = {
            "tier": tier_value.value,
            "billing_period": period_value.value,
            "price_id": price_ref,
        }
        if owner_id:
            metadata["owner_id"] = owner_id

        params = {
            "mode": "subscription",
            "success_url": f"{self.site_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.site_url}/subscription",
            "line_items": [{"price": price_ref, "quantity": 1}],
        }
        subscription_data = {}
        if tier_value != SubscriptionTier.ENTERPRISE and self.eligibility.is_eligible(owner_id, tier_value):
            metadata["trial_period_days"] = str(self.trial_period_days)
            subscription_data["trial_period_days"] = self.trial_period_days
            params["payment_method_collection"] = "always"
        subscription_data["metadata"] = dict(metadata)
        params["subscription_data"] = subscription_data
        params["metadata"] = metadata
        if owner_id:
            params["client_reference_id"] = owner_id
        if email:
            params["customer_email"] = email

        session = self.stripe_integration.create_checkout_session(params)
        logging.info(
            f"Checkout session {session['id']} created for owner {owner_id or 'anonymous'}: "
            f"{tier_value.value}/{period_value.value}, trial={'trial_period_days' in metadata}"
        )
        return CheckoutSession(session_id=session["id"], redirect_url=session["url"])
