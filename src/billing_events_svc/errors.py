from typing import Any, Dict, Optional


class BillingError(Exception):
    """
    Base class for every error the billing service raises on purpose.

    :attr status_code: HTTP status used when the error reaches a route.
    :attr retryable: True when a later redelivery of the same webhook event may succeed.
    """
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    status_code = 400


class AuthenticationError(BillingError):
    status_code = 400


class NotConfigured(BillingError):
    status_code = 500


class InvalidFormat(BillingError):
    status_code = 500


class NotFoundError(BillingError):
    # The referenced record may simply not have been created yet.
    status_code = 500
    retryable = True


class UpstreamError(BillingError):
    status_code = 502


class PersistenceError(BillingError):
    status_code = 503
    retryable = True
