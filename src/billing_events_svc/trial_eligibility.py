import logging
from typing import Optional

from billing_events_svc.errors import PersistenceError
from billing_events_svc.models.subscription import (
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing_events_svc.record_store import RecordStore


class TrialEligibilityChecker:
    """
    Decides whether a checkout may carry a free trial: one trial per owner, never for enterprise.

    A store outage fails open; the warning it logs lets over-granted trials be audited.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def is_eligible(self, owner_id: Optional[str], tier: SubscriptionTier) -> bool:
        if tier == SubscriptionTier.ENTERPRISE:
            return False
        if not owner_id:
            return True
        trialing = SubscriptionStatus.TRIALING.value
        try:
            used_trial = self.store.exists(
                Subscription,
                Subscription.owner_id == owner_id,
                Subscription.status == trialing,
            ) or self.store.exists(
                SubscriptionHistory,
                SubscriptionHistory.owner_id == owner_id,
                SubscriptionHistory.new_status == trialing,
            )
        except PersistenceError as e:
            logging.warning(
                f"trial_eligibility_fail_open: history lookup failed for owner {owner_id}, granting trial: {e}"
            )
            return True
        return not used_trial
