import logging
from typing import Callable, Dict, Optional

from sqlalchemy import false

from billing_events_svc.config import Settings, get_settings
from billing_events_svc.errors import ValidationError
from billing_events_svc.events import EventKind, EventOutcome, WebhookEvent
from billing_events_svc.invoice_recorder import InvoiceRecorder
from billing_events_svc.models.processed_event import ProcessedEvent
from billing_events_svc.record_store import RecordStore
from billing_events_svc.subscription_reconciler import SubscriptionReconciler

Handler = Callable[[WebhookEvent, SubscriptionReconciler, InvoiceRecorder], EventOutcome]

HANDLERS: Dict[EventKind, Handler] = {
    EventKind.CHECKOUT_COMPLETED: lambda event, reconciler, recorder: reconciler.create(event),
    EventKind.SUBSCRIPTION_CREATED: lambda event, reconciler, recorder: reconciler.upsert(event),
    EventKind.SUBSCRIPTION_UPDATED: lambda event, reconciler, recorder: reconciler.upsert(event),
    EventKind.SUBSCRIPTION_DELETED: lambda event, reconciler, recorder: reconciler.terminate(event),
    EventKind.INVOICE_PAID: lambda event, reconciler, recorder: recorder.record_paid(event),
    EventKind.INVOICE_PAYMENT_FAILED: lambda event, reconciler, recorder: recorder.record_failed(event),
}


def process_event(event: WebhookEvent, store: RecordStore, settings: Optional[Settings] = None) -> EventOutcome:
    """
    Route an authenticated Stripe event to its handler and update local billing state.

    Unknown kinds are acknowledged without action. Events with unusable data are logged and
    acknowledged as unprocessable, since redelivering them cannot help. Retryable errors
    (PersistenceError, NotFoundError) propagate so the caller can ask Stripe to redeliver.

    :param event: Typed event produced by ``events.parse_event``.
    :param store: Record store bound to the current request's session.
    :param settings: Service settings; the process-wide ones when omitted.
    :return: What happened to the event.
    """
    settings = settings or get_settings()
    use_ledger = settings.event_ledger_enabled and bool(event.id)

    if use_ledger and store.find_by_key(ProcessedEvent, event.id) is not None:
        logging.info(f"Event {event.id} ({event.type}) already processed, skipping.")
        return EventOutcome.DUPLICATE

    handler = HANDLERS.get(event.kind)
    if handler is None:
        logging.info(f"Unhandled event type: {event.type} for event {event.id} at {event.created}. No action taken.")
        outcome = EventOutcome.IGNORED
    else:
        reconciler = SubscriptionReconciler(store, settings.past_due_grace_days)
        recorder = InvoiceRecorder(store, reconciler, settings.record_failed_invoices)
        try:
            outcome = handler(event, reconciler, recorder)
        except ValidationError as e:
            logging.error(f"Event {event.id} ({event.type}) is unprocessable: {e.message} {e.details}")
            outcome = EventOutcome.UNPROCESSABLE

    if use_ledger:
        store.upsert_by_key(
            ProcessedEvent,
            event.id,
            {"event_type": event.type, "outcome": outcome.value},
            only_if=false(),
        )
    return outcome
