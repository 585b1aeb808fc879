"""
Folds checkout and subscription events into the stored Subscription record.

Events arrive at least once and in any order, so every write here is a natural-key
upsert and every update is guarded:

* an event whose period end is older than the stored one is stale and dropped,
  unless the stored period is still the estimate made at checkout;
* a status may only move forward (trialing -> active -> past_due -> cancelled),
  except that a recovered payment takes past_due back to active;
* deletion is final and always wins.

The guards are repeated inside the UPDATE itself, so two deliveries racing on the
same subscription cannot regress each other.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, false, or_

from billing_events_svc.errors import NotFoundError, ValidationError
from billing_events_svc.events import (
    CheckoutCompleted,
    EventOutcome,
    SubscriptionChanged,
    SubscriptionDeleted,
    from_timestamp,
)
from billing_events_svc.models.base import utcnow
from billing_events_svc.models.subscription import (
    NON_TERMINAL_STATUSES,
    BillingPeriod,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing_events_svc.record_store import RecordStore

PROCESSOR_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
}

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.TRIALING: {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.CANCELLED: {SubscriptionStatus.CANCELLED},
    SubscriptionStatus.EXPIRED: {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
}

PERIOD_LENGTHS = {
    BillingPeriod.MONTHLY: timedelta(days=30),
    BillingPeriod.ANNUAL: timedelta(days=365),
}


def map_processor_status(status: Optional[str]) -> SubscriptionStatus:
    return PROCESSOR_STATUSES.get(status or "", SubscriptionStatus.EXPIRED)


def is_allowed_transition(old: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


def is_stale(stored_end: Optional[datetime], incoming_end: Optional[datetime]) -> bool:
    return stored_end is not None and incoming_end is not None and incoming_end < stored_end


def _enum_or_none(enum_cls, value: Optional[str]):
    try:
        return enum_cls(value) if value else None
    except ValueError:
        return None


def _pick(*candidates: Optional[str]) -> Optional[str]:
    for candidate in candidates:
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return None


class SubscriptionReconciler:

    def __init__(self, store: RecordStore, past_due_grace_days: int = 7) -> None:
        self.store = store
        self.grace_period = timedelta(days=past_due_grace_days)

    # -- create ------------------------------------------------------------

    def create(self, event: CheckoutCompleted, now: Optional[datetime] = None) -> EventOutcome:
        """
        Record the subscription started by a completed checkout. A replay is a no-op.

        :raises ValidationError: if the session carries no subscription or owner reference.
        """
        now = now or utcnow()
        session = event.payload
        subscription_ref = session.subscription
        owner_id = _pick(session.client_reference_id, session.meta("owner_id"))
        if not subscription_ref or not owner_id:
            raise ValidationError(
                "checkout.session.completed missing subscription or owner reference",
                {"event_id": event.id, "session_id": session.id},
            )

        if self.store.find_by_key(Subscription, subscription_ref) is not None:
            logging.info(f"Event {event.id}: subscription {subscription_ref} already recorded, checkout replay ignored.")
            return EventOutcome.DUPLICATE

        billing_period = _enum_or_none(BillingPeriod, session.meta("billing_period")) or BillingPeriod.MONTHLY
        trial_days = session.meta("trial_period_days")
        period_start = from_timestamp(session.created) or now
        if trial_days and trial_days.isdigit() and int(trial_days) > 0:
            status = SubscriptionStatus.TRIALING
            period_end = period_start + timedelta(days=int(trial_days))
        else:
            status = SubscriptionStatus.ACTIVE
            period_end = period_start + PERIOD_LENGTHS[billing_period]

        values = {
            "owner_id": owner_id,
            "tier": (_enum_or_none(SubscriptionTier, session.meta("tier")) or SubscriptionTier.STARTER).value,
            "status": status.value,
            "billing_period": billing_period.value,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "period_confirmed": False,
            "cancel_at_period_end": False,
            "external_customer_ref": session.customer,
            "external_price_ref": session.meta("price_id"),
        }
        if not self._insert(subscription_ref, values, now):
            logging.info(f"Event {event.id}: subscription {subscription_ref} was recorded concurrently, checkout ignored.")
            return EventOutcome.DUPLICATE
        logging.info(f"Event {event.id}: subscription {subscription_ref} created for owner {owner_id} as {status.value}.")
        return EventOutcome.PROCESSED

    # -- upsert ------------------------------------------------------------

    def upsert(self, event: SubscriptionChanged, now: Optional[datetime] = None) -> EventOutcome:
        """
        Apply a subscription snapshot from the processor, creating the record if it is new.

        :raises NotFoundError: if the subscription is new and no owner can be resolved for it yet.
        """
        now = now or utcnow()
        sub = event.payload
        status = map_processor_status(sub.status)
        values: Dict[str, Any] = {
            "status": status.value,
            "cancel_at_period_end": sub.cancel_at_period_end,
        }
        optional = {
            "external_customer_ref": sub.customer,
            "current_period_start": sub.period_start(),
            "current_period_end": sub.period_end(),
            "period_confirmed": True if sub.period_end() is not None else None,
            "canceled_at": from_timestamp(sub.canceled_at),
            "external_price_ref": sub.price_ref(),
            "tier": getattr(_enum_or_none(SubscriptionTier, sub.meta("tier")), "value", None),
        }
        if sub.recurring_interval():
            optional["billing_period"] = (
                BillingPeriod.ANNUAL if sub.recurring_interval() == "year" else BillingPeriod.MONTHLY
            ).value
        values.update({key: value for key, value in optional.items() if value is not None})

        existing = self.store.find_by_key(Subscription, sub.id)
        if existing is None:
            owner_id = _pick(sub.meta("owner_id")) or self._owner_for_customer(sub.customer)
            if not owner_id:
                raise NotFoundError(
                    "No owner known for subscription yet",
                    {"subscription_ref": sub.id, "customer_ref": sub.customer},
                )
            insert_values = {
                "owner_id": owner_id,
                "tier": SubscriptionTier.STARTER.value,
                "billing_period": BillingPeriod.MONTHLY.value,
                **values,
            }
            if self._insert(sub.id, insert_values, now):
                logging.info(f"Event {event.id}: subscription {sub.id} created out of order as {status.value}.")
                return EventOutcome.PROCESSED
            existing = self.store.find_by_key(Subscription, sub.id)

        return self._apply(existing, status, sub.period_end(), values, event.id, now)

    def mark_past_due(
        self,
        subscription_ref: str,
        period_end: Optional[datetime],
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EventOutcome:
        """
        Move a subscription to past_due after a failed payment, under the same rules as upsert.

        :raises NotFoundError: if the subscription has not been recorded yet.
        """
        existing = self.store.find_by_key(Subscription, subscription_ref)
        if existing is None:
            raise NotFoundError("Subscription not found for failed payment", {"subscription_ref": subscription_ref})
        status = SubscriptionStatus.PAST_DUE
        return self._apply(existing, status, period_end, {"status": status.value}, event_id, now or utcnow())

    # -- terminate ---------------------------------------------------------

    def terminate(self, event: SubscriptionDeleted, now: Optional[datetime] = None) -> EventOutcome:
        """
        Cancel a subscription the processor deleted. Deletion always wins over stored state.
        """
        now = now or utcnow()
        sub = event.payload
        cancelled = SubscriptionStatus.CANCELLED
        existing = self.store.find_by_key(Subscription, sub.id)

        if existing is None:
            owner_id = _pick(sub.meta("owner_id")) or self._owner_for_customer(sub.customer)
            if not owner_id:
                logging.info(f"Event {event.id}: subscription {sub.id} unknown and has no owner, deletion ignored.")
                return EventOutcome.IGNORED
            values = {
                "owner_id": owner_id,
                "tier": getattr(_enum_or_none(SubscriptionTier, sub.meta("tier")), "value", None)
                or SubscriptionTier.STARTER.value,
                "billing_period": BillingPeriod.MONTHLY.value,
                "status": cancelled.value,
                "canceled_at": now,
                "current_period_start": sub.period_start(),
                "current_period_end": sub.period_end(),
                "period_confirmed": sub.period_end() is not None,
                "cancel_at_period_end": sub.cancel_at_period_end,
                "external_customer_ref": sub.customer,
                "external_price_ref": sub.price_ref(),
            }
            if self._insert(sub.id, values, now):
                logging.info(f"Event {event.id}: subscription {sub.id} recorded as cancelled.")
                return EventOutcome.PROCESSED
            existing = self.store.find_by_key(Subscription, sub.id)

        if existing.status == cancelled.value and existing.canceled_at is not None:
            logging.info(f"Event {event.id}: subscription {sub.id} already cancelled.")
            return EventOutcome.DUPLICATE

        owner_id, previous_status, period_end = existing.owner_id, existing.status, existing.current_period_end
        self.store.upsert_by_key(
            Subscription,
            sub.id,
            {"status": cancelled.value, "canceled_at": existing.canceled_at or now},
        )
        if previous_status != cancelled.value:
            self._record_transition(owner_id, sub.id, previous_status, cancelled, period_end, now)
        logging.info(f"Event {event.id}: subscription {sub.id} cancelled (was {previous_status}).")
        return EventOutcome.PROCESSED

    # -- reads -------------------------------------------------------------

    def current_state(self, owner_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """
        Latest subscription for an owner. A past_due record whose grace period has run out
        is moved to expired here, on read; no event ever pushes that transition.
        """
        now = now or utcnow()
        record = self.store.find_latest_by_owner(Subscription, owner_id)
        if record is None:
            return None
        past_due = SubscriptionStatus.PAST_DUE
        if (
            record.status == past_due.value
            and record.current_period_end is not None
            and now > record.current_period_end + self.grace_period
        ):
            expired = SubscriptionStatus.EXPIRED
            ref, period_end = record.external_subscription_ref, record.current_period_end
            result = self.store.upsert_by_key(
                Subscription,
                ref,
                {"status": expired.value},
                only_if=Subscription.status == past_due.value,
            )
            if result.applied:
                self._record_transition(owner_id, ref, past_due.value, expired, period_end, now)
                logging.info(f"Subscription {ref} expired after grace period.")
            record = result.record
        return record

    # -- internals ---------------------------------------------------------

    def _apply(
        self,
        existing: Subscription,
        status: SubscriptionStatus,
        incoming_end: Optional[datetime],
        values: Dict[str, Any],
        event_id: Optional[str],
        now: datetime,
    ) -> EventOutcome:
        ref = existing.external_subscription_ref
        owner_id = existing.owner_id
        old_status = SubscriptionStatus(existing.status)
        # A checkout-time estimate is replaced by the first real period, even a shorter one.
        stored_end = existing.current_period_end if existing.period_confirmed else None
        if is_stale(stored_end, incoming_end):
            logging.warning(
                f"Event {event_id}: stale update for {ref} discarded "
                f"(period end {incoming_end.isoformat()} < stored {stored_end.isoformat()})."
            )
            return EventOutcome.STALE
        if not is_allowed_transition(old_status, status):
            logging.warning(f"Event {event_id}: transition {old_status.value} -> {status.value} for {ref} refused.")
            return EventOutcome.STALE
        if all(getattr(existing, key) == value for key, value in values.items()):
            logging.info(f"Event {event_id}: subscription {ref} already up to date.")
            return EventOutcome.DUPLICATE

        period_end = incoming_end or existing.current_period_end
        guard = Subscription.status == old_status.value
        if incoming_end is not None:
            guard = and_(
                guard,
                or_(
                    Subscription.period_confirmed.is_(false()),
                    Subscription.current_period_end.is_(None),
                    Subscription.current_period_end <= incoming_end,
                ),
            )
        result = self.store.upsert_by_key(Subscription, ref, values, only_if=guard)
        if not result.applied:
            logging.warning(f"Event {event_id}: subscription {ref} changed concurrently, update discarded.")
            return EventOutcome.STALE
        if status != old_status:
            self._record_transition(owner_id, ref, old_status.value, status, period_end, now)
        logging.info(f"Event {event_id}: subscription {ref} updated ({old_status.value} -> {status.value}).")
        return EventOutcome.PROCESSED

    def _insert(self, subscription_ref: str, values: Dict[str, Any], now: datetime) -> bool:
        """Insert-if-absent. Returns False when the record already existed."""
        status = SubscriptionStatus(values["status"])
        owner_id = values["owner_id"]
        period_end = values.get("current_period_end")
        result = self.store.upsert_by_key(Subscription, subscription_ref, values, only_if=false())
        if not result.created:
            return False
        self._record_transition(owner_id, subscription_ref, None, status, period_end, now)
        if not status.is_terminal:
            self._supersede_others(owner_id, subscription_ref, period_end, now)
        return True

    def _supersede_others(
        self,
        owner_id: str,
        keep_ref: str,
        period_end: Optional[datetime],
        now: datetime,
    ) -> None:
        # One live subscription per owner, but only older ones give way: a late event for a
        # previous subscription must not cancel the one that replaced it.
        criteria = [
            Subscription.owner_id == owner_id,
            Subscription.external_subscription_ref != keep_ref,
            Subscription.status.in_(NON_TERMINAL_STATUSES),
        ]
        if period_end is not None:
            criteria.append(
                or_(Subscription.current_period_end.is_(None), Subscription.current_period_end <= period_end)
            )
        for other in self.store.find_all(Subscription, *criteria):
            other_ref, other_status, other_end = (
                other.external_subscription_ref,
                other.status,
                other.current_period_end,
            )
            result = self.store.upsert_by_key(
                Subscription,
                other_ref,
                {"status": SubscriptionStatus.CANCELLED.value, "canceled_at": now},
                only_if=and_(*criteria[2:]),
            )
            if result.applied:
                self._record_transition(owner_id, other_ref, other_status, SubscriptionStatus.CANCELLED, other_end, now)
                logging.info(f"Subscription {other_ref} superseded by {keep_ref} for owner {owner_id}.")

    def _owner_for_customer(self, customer_ref: Optional[str]) -> Optional[str]:
        if not customer_ref:
            return None
        record = self.store.find_latest_by(Subscription, external_customer_ref=customer_ref)
        return record.owner_id if record else None

    def _record_transition(
        self,
        owner_id: str,
        subscription_ref: str,
        old_status: Optional[str],
        new_status: SubscriptionStatus,
        period_end: Optional[datetime],
        now: datetime,
    ) -> None:
        # Written once the subscription write went through; the key makes a redelivered transition a no-op.
        period_marker = int(period_end.timestamp()) if period_end else "none"
        self.store.upsert_by_key(
            SubscriptionHistory,
            f"{subscription_ref}:{old_status or 'none'}:{new_status.value}:{period_marker}",
            {
                "owner_id": owner_id,
                "subscription_ref": subscription_ref,
                "old_status": old_status,
                "new_status": new_status.value,
                "changed_at": now,
            },
            only_if=false(),
        )
