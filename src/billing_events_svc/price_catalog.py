from typing import Dict, Tuple

from billing_events_svc.config import Settings
from billing_events_svc.errors import InvalidFormat, NotConfigured
from billing_events_svc.models.subscription import BillingPeriod, SubscriptionTier

PRICE_REF_PREFIX = "price_"


def price_env_var(tier: SubscriptionTier, billing_period: BillingPeriod) -> str:
    return f"STRIPE_PRICE_{tier.value.upper()}_{billing_period.value.upper()}"


class PriceCatalog:
    """
    Maps (tier, billing period) to the processor's price identifier.
    """

    def __init__(self, prices: Dict[Tuple[SubscriptionTier, BillingPeriod], str]) -> None:
        self._prices = dict(prices)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceCatalog":
        prices = {}
        for tier in SubscriptionTier:
            for period in BillingPeriod:
                prices[(tier, period)] = getattr(settings, price_env_var(tier, period).lower())
        return cls(prices)

    def resolve(self, tier: SubscriptionTier, billing_period: BillingPeriod) -> str:
        """
        :raises NotConfigured: if no price is configured for the pair.
        :raises InvalidFormat: if the configured value is not a processor price id.
        """
        price_ref = (self._prices.get((tier, billing_period)) or "").strip()
        if not price_ref:
            raise NotConfigured(
                f"Price ID not configured for {tier.value} {billing_period.value}",
                {"required_env_var": price_env_var(tier, billing_period)},
            )
        if not price_ref.startswith(PRICE_REF_PREFIX):
            raise InvalidFormat(
                f"Invalid price ID format for {tier.value} {billing_period.value}",
                {"expected_prefix": PRICE_REF_PREFIX},
            )
        return price_ref
