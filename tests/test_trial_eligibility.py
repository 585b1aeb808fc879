import logging

from billing_events_svc.errors import PersistenceError
from billing_events_svc.models.subscription import SubscriptionTier
from billing_events_svc.subscription_reconciler import SubscriptionReconciler
from billing_events_svc.trial_eligibility import TrialEligibilityChecker
from factories import checkout_session, stripe_event, stripe_subscription, typed


def test_new_owner_is_eligible(store):
    assert TrialEligibilityChecker(store).is_eligible("u1", SubscriptionTier.STARTER) is True


def test_anonymous_checkout_is_eligible(store):
    assert TrialEligibilityChecker(store).is_eligible(None, SubscriptionTier.PROFESSIONAL) is True


def test_enterprise_never_gets_a_trial(store):
    assert TrialEligibilityChecker(store).is_eligible("u1", SubscriptionTier.ENTERPRISE) is False


def test_owner_currently_trialing_is_not_eligible(store):
    SubscriptionReconciler(store).create(typed(stripe_event("checkout.session.completed", checkout_session(trial_days=14))))

    assert TrialEligibilityChecker(store).is_eligible("u1", SubscriptionTier.STARTER) is False


def test_past_trial_is_remembered_after_cancellation(store):
    reconciler = SubscriptionReconciler(store)
    reconciler.create(typed(stripe_event("checkout.session.completed", checkout_session(trial_days=14))))
    reconciler.terminate(typed(stripe_event("customer.subscription.deleted", stripe_subscription(), event_id="evt_2")))

    assert TrialEligibilityChecker(store).is_eligible("u1", SubscriptionTier.PROFESSIONAL) is False
    assert TrialEligibilityChecker(store).is_eligible("u2", SubscriptionTier.PROFESSIONAL) is True


def test_paid_subscription_without_trial_stays_eligible(store):
    SubscriptionReconciler(store).create(typed(stripe_event("checkout.session.completed", checkout_session())))

    assert TrialEligibilityChecker(store).is_eligible("u1", SubscriptionTier.STARTER) is True


def test_store_outage_fails_open(store, monkeypatch, caplog):
    def unavailable(*args, **kwargs):
        raise PersistenceError("Record store unavailable")

    monkeypatch.setattr(store, "exists", unavailable)

    with caplog.at_level(logging.WARNING):
        assert TrialEligibilityChecker(store).is_eligible("u1", SubscriptionTier.STARTER) is True
    assert "trial_eligibility_fail_open" in caplog.text
