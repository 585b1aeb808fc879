import logging
from typing import Any, Dict, NamedTuple, Optional

import stripe

from billing_events_svc.config import Settings
from billing_events_svc.errors import AuthenticationError, UpstreamError


class AuthenticatedPayload(NamedTuple):
    raw_body: bytes


class StripeIntegration:
    """
    Outbound calls to the Stripe API.

    Calls fail fast: a bounded HTTP timeout and no client-side retries. Any Stripe
    failure is surfaced to the caller as an UpstreamError carrying Stripe's message.
    """

    def __init__(self, api_key: Optional[str], timeout: float = 10.0) -> None:
        self.api_key = api_key
        self.timeout = timeout
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeIntegration":
        return cls(settings.stripe_api_key, settings.stripe_timeout_seconds)

    def _require_key(self) -> str:
        if not self.api_key:
            raise UpstreamError("Stripe secret key not configured")
        return self.api_key

    def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a hosted checkout session.

        :param params: Checkout session parameters as documented by Stripe.
        :return: The created session.
        :raises UpstreamError: if Stripe rejects the request or cannot be reached in time.
        """
        api_key = self._require_key()
        try:
            return stripe.checkout.Session.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            logging.error(f"Error creating checkout session: {e}", exc_info=True)
            raise UpstreamError(e.user_message or "Failed to create checkout session") from e

    def schedule_cancellation(self, subscription_ref: str) -> Dict[str, Any]:
        """
        Ask Stripe to cancel a subscription when its current period ends.

        :param subscription_ref: The Stripe subscription id.
        :return: The updated subscription.
        :raises UpstreamError: if Stripe rejects the request or cannot be reached in time.
        """
        api_key = self._require_key()
        try:
            return stripe.Subscription.modify(subscription_ref, api_key=api_key, cancel_at_period_end=True)
        except stripe.StripeError as e:
            logging.error(f"Error scheduling cancellation for {subscription_ref}: {e}", exc_info=True)
            raise UpstreamError(e.user_message or "Failed to cancel subscription") from e


class WebhookAuthenticator:
    """
    Verifies that a webhook body was signed by Stripe with our endpoint secret.

    Runs on the raw bytes, before anything is parsed.
    """

    def __init__(self, secret: str, tolerance: int = 300) -> None:
        self.secret = secret
        self.tolerance = tolerance

    def authenticate(self, raw_body: bytes, signature_header: Optional[str]) -> AuthenticatedPayload:
        """
        :raises AuthenticationError: if the header is absent, malformed, stale or does not match.
        """
        if not signature_header:
            logging.warning("Webhook rejected: missing Stripe-Signature header")
            raise AuthenticationError("Missing Stripe-Signature header")
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature_header, self.secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logging.warning(f"Webhook rejected: signature verification failed: {e}")
            raise AuthenticationError("Invalid signature") from e
        return AuthenticatedPayload(raw_body)
