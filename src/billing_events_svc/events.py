"""
Typed webhook events.

An authenticated Stripe body is turned into exactly one of the event classes below,
chosen by its ``type``; kinds we do not act on become ``UnrecognizedEvent``.
"""
import enum
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator

from billing_events_svc.errors import ValidationError
from billing_events_svc.stripe_integration import AuthenticatedPayload


class EventKind(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout.completed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNRECOGNIZED = "unrecognized"


class EventOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNPROCESSABLE = "unprocessable"


STRIPE_EVENT_KINDS = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _reference(value: Any) -> Any:
    # Expanded objects carry their id; plain references are already strings.
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: Dict[str, Any] = {}

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_or_empty(cls, value):
        return value or {}

    def meta(self, key: str) -> Optional[str]:
        value = self.metadata.get(key)
        if value is None or not str(value).strip():
            return None
        return str(value).strip()


class CheckoutSessionObject(StripeObject):
    id: str
    subscription: Optional[str] = None
    customer: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None
    created: Optional[int] = None

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def collapse_expanded(cls, value):
        return _reference(value)


class SubscriptionObject(StripeObject):
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    items: Optional[Dict[str, Any]] = None

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_expanded(cls, value):
        return _reference(value)

    def _first_item(self) -> Dict[str, Any]:
        data = (self.items or {}).get("data") or []
        return data[0] if data else {}

    def period_start(self) -> Optional[datetime]:
        # Newer API versions only report the period on the subscription items.
        return from_timestamp(self.current_period_start or self._first_item().get("current_period_start"))

    def period_end(self) -> Optional[datetime]:
        return from_timestamp(self.current_period_end or self._first_item().get("current_period_end"))

    def price_ref(self) -> Optional[str]:
        return (self._first_item().get("price") or {}).get("id")

    def recurring_interval(self) -> Optional[str]:
        return ((self._first_item().get("price") or {}).get("recurring") or {}).get("interval")


class InvoiceObject(StripeObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    status_transitions: Dict[str, Any] = {}
    due_date: Optional[int] = None
    period_end: Optional[int] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    lines: Optional[Dict[str, Any]] = None
    parent: Optional[Dict[str, Any]] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def collapse_expanded(cls, value):
        return _reference(value)

    @field_validator("status_transitions", mode="before")
    @classmethod
    def transitions_or_empty(cls, value):
        return value or {}

    def subscription_ref(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _reference(details.get("subscription"))

    def line_period_end(self) -> Optional[datetime]:
        data = (self.lines or {}).get("data") or []
        if data and (data[0].get("period") or {}).get("end"):
            return from_timestamp(data[0]["period"]["end"])
        return None

    def paid_at(self) -> Optional[datetime]:
        return from_timestamp(self.status_transitions.get("paid_at"))

    def document_url(self) -> Optional[str]:
        return self.hosted_invoice_url or self.invoice_pdf


class BaseEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str
    created: Optional[int] = None
    kind: EventKind


class CheckoutCompleted(BaseEvent):
    payload: CheckoutSessionObject


class SubscriptionChanged(BaseEvent):
    payload: SubscriptionObject


class SubscriptionDeleted(BaseEvent):
    payload: SubscriptionObject


class InvoicePaid(BaseEvent):
    payload: InvoiceObject


class InvoicePaymentFailed(BaseEvent):
    payload: InvoiceObject


class UnrecognizedEvent(BaseEvent):
    payload: Dict[str, Any] = {}


WebhookEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    UnrecognizedEvent,
]

EVENT_CLASSES = {
    EventKind.CHECKOUT_COMPLETED: CheckoutCompleted,
    EventKind.SUBSCRIPTION_CREATED: SubscriptionChanged,
    EventKind.SUBSCRIPTION_UPDATED: SubscriptionChanged,
    EventKind.SUBSCRIPTION_DELETED: SubscriptionDeleted,
    EventKind.INVOICE_PAID: InvoicePaid,
    EventKind.INVOICE_PAYMENT_FAILED: InvoicePaymentFailed,
    EventKind.UNRECOGNIZED: UnrecognizedEvent,
}


def parse_event(authenticated: AuthenticatedPayload) -> WebhookEvent:
    """
    Deserialize an authenticated webhook body into its typed event.

    :raises ValidationError: if the body is not a JSON event or its object does not fit its kind.
    """
    try:
        envelope = json.loads(authenticated.raw_body)
    except ValueError:
        raise ValidationError("Invalid JSON in webhook body") from None
    if not isinstance(envelope, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event_type = envelope.get("type")
    if not event_type:
        raise ValidationError("Missing 'type' in event payload")

    kind = STRIPE_EVENT_KINDS.get(event_type, EventKind.UNRECOGNIZED)
    data = envelope.get("data")
    data_object = (data.get("object") if isinstance(data, dict) else None) or {}
    try:
        return EVENT_CLASSES[kind](
            id=envelope.get("id"),
            type=event_type,
            created=envelope.get("created"),
            kind=kind,
            payload=data_object,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Malformed {event_type} event",
            {"event_id": envelope.get("id"), "errors": e.errors(include_url=False, include_context=False)},
        ) from None
