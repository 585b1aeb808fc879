import logging
from typing import Optional

from sqlalchemy import false

from billing_events_svc.errors import NotFoundError
from billing_events_svc.events import EventOutcome, InvoicePaid, InvoicePaymentFailed, from_timestamp
from billing_events_svc.models.invoice import Invoice, InvoiceStatus
from billing_events_svc.models.subscription import Subscription
from billing_events_svc.record_store import RecordStore
from billing_events_svc.subscription_reconciler import SubscriptionReconciler


class InvoiceRecorder:
    """
    Records paid invoices against their subscription and routes failed payments to the reconciler.
    """

    def __init__(
        self,
        store: RecordStore,
        reconciler: SubscriptionReconciler,
        record_failed_invoices: bool = False,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.record_failed_invoices = record_failed_invoices

    def _linked_subscription(self, subscription_ref: str, customer_ref: Optional[str]) -> Optional[Subscription]:
        subscription = self.store.find_by_key(Subscription, subscription_ref)
        if subscription is None and customer_ref:
            subscription = self.store.find_latest_by(Subscription, external_customer_ref=customer_ref)
        return subscription

    def record_paid(self, event: InvoicePaid) -> EventOutcome:
        """
        Store a paid invoice. Once paid, an invoice never changes again.

        :raises NotFoundError: if its subscription has not been recorded yet.
        """
        invoice = event.payload
        subscription_ref = invoice.subscription_ref()
        if not subscription_ref:
            logging.info(f"Event {event.id}: invoice {invoice.id} has no subscription, ignored.")
            return EventOutcome.IGNORED

        subscription = self._linked_subscription(subscription_ref, invoice.customer)
        if subscription is None:
            raise NotFoundError(
                "Subscription not found for paid invoice",
                {"invoice_ref": invoice.id, "subscription_ref": subscription_ref, "customer_ref": invoice.customer},
            )

        values = {
            "subscription_ref": subscription_ref,
            "owner_id": subscription.owner_id,
            "amount": invoice.amount_paid,
            "currency": invoice.currency,
            "status": InvoiceStatus.PAID.value,
            "paid_at": invoice.paid_at() or from_timestamp(event.created),
            "due_date": from_timestamp(invoice.due_date),
            "document_url": invoice.document_url(),
        }
        result = self.store.upsert_by_key(
            Invoice,
            invoice.id,
            values,
            only_if=Invoice.status != InvoiceStatus.PAID.value,
        )
        if not result.applied:
            logging.info(f"Event {event.id}: invoice {invoice.id} already paid, redelivery ignored.")
            return EventOutcome.DUPLICATE
        logging.info(
            f"Event {event.id}: invoice {invoice.id} recorded as paid "
            f"({invoice.amount_paid} {invoice.currency}) for owner {subscription.owner_id}."
        )
        return EventOutcome.PROCESSED

    def record_failed(self, event: InvoicePaymentFailed) -> EventOutcome:
        """
        Mark the invoice's subscription past_due.

        :raises NotFoundError: if its subscription has not been recorded yet.
        """
        invoice = event.payload
        subscription_ref = invoice.subscription_ref()
        if not subscription_ref:
            logging.info(f"Event {event.id}: failed invoice {invoice.id} has no subscription, ignored.")
            return EventOutcome.IGNORED

        outcome = self.reconciler.mark_past_due(subscription_ref, invoice.line_period_end(), event.id)

        if self.record_failed_invoices:
            subscription = self._linked_subscription(subscription_ref, invoice.customer)
            result = self.store.upsert_by_key(
                Invoice,
                invoice.id,
                {
                    "subscription_ref": subscription_ref,
                    "owner_id": subscription.owner_id,
                    "amount": invoice.amount_due,
                    "currency": invoice.currency,
                    "status": InvoiceStatus.FAILED.value,
                    "due_date": from_timestamp(invoice.due_date),
                    "document_url": invoice.document_url(),
                },
                only_if=false(),
            )
            if result.created:
                logging.info(f"Event {event.id}: invoice {invoice.id} recorded as failed.")
                return EventOutcome.PROCESSED
        return outcome
