# core/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base error for the checkout payment flow.

    ``code`` is stable and safe to show to clients, ``message`` is the
    human-readable text and ``retryable`` tells the caller whether the same
    action may be attempted again as-is.
    """

    code = "PAYMENT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


class ValidationError(PaymentError):
    """Invalid local input (phone, operator, amount). Never reaches the network."""

    code = "VALIDATION_ERROR"
    status_code = 422


class GatewayError(PaymentError):
    code = "GATEWAY_ERROR"
    status_code = 502


class Unauthenticated(GatewayError):
    """No usable bearer credential; refresh it and retry the same call."""

    code = "UNAUTHENTICATED"
    status_code = 401
    retryable = True


class GatewayRejected(GatewayError):
    """The gateway refused the request. Message is surfaced verbatim."""

    code = "GATEWAY_REJECTED"
    status_code = 402


class NetworkError(GatewayError):
    code = "NETWORK_ERROR"
    status_code = 503
    retryable = True


class SubmissionFailed(PaymentError):
    """Order creation failed after the payment was captured."""

    code = "SUBMISSION_FAILED"
    status_code = 502
    retryable = True


class PaymentInProgress(PaymentError):
    """A captured payment is still being turned into an order for this user."""

    code = "PAYMENT_IN_PROGRESS"
    status_code = 409
    retryable = True


class StagingFailed(PaymentError):
    code = "STAGING_FAILED"
    status_code = 503
    retryable = True
