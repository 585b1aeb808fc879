import enum

from sqlalchemy import Boolean, Column, Integer, String

from billing_events_svc.models.base import Base, UTCDateTime, utcnow


class SubscriptionTier(str, enum.Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class BillingPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


NON_TERMINAL_STATUSES = (
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)


class Subscription(Base):
    """
    Local record of one processor subscription, keyed by the processor's own reference.
    """
    __tablename__ = 'subscriptions'
    __natural_key__ = 'external_subscription_ref'

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_subscription_ref = Column(String(255), unique=True, nullable=False, index=True)
    external_customer_ref = Column(String(255), nullable=True, index=True)
    external_price_ref = Column(String(255), nullable=True)
    owner_id = Column(String(255), nullable=False, index=True)
    tier = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False)
    billing_period = Column(String(32), nullable=False)
    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    # False while the period is the checkout-time estimate, True once the processor reported it.
    period_confirmed = Column(Boolean, nullable=False, default=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Subscription(ref={self.external_subscription_ref}, owner={self.owner_id}, status={self.status})>"


class SubscriptionHistory(Base):
    """
    Append-only log of status transitions; one row per (subscription, new status, period end).
    """
    __tablename__ = 'subscription_history'
    __natural_key__ = 'transition_key'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transition_key = Column(String(512), unique=True, nullable=False)
    owner_id = Column(String(255), nullable=False, index=True)
    subscription_ref = Column(String(255), nullable=False, index=True)
    old_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    changed_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SubscriptionHistory(ref={self.subscription_ref}, {self.old_status}->{self.new_status})>"
