# app/x402/errors.py
"""
Failure taxonomy for the payment gateway.

Every failure that can reach the HTTP boundary is one of these classes.
Each carries the HTTP status it maps to and whether the caller may retry
the same request later. Ledger state is never changed by a failed call.
"""
from typing import Any, Dict, Optional


class PaymentGatewayError(Exception):
    """Base class for classified gateway failures."""

    status_code: int = 500
    error: str = "Payment gateway error"
    retryable: bool = False

    def __init__(self, detail: Optional[str] = None, **context: Any):
        self.detail = detail or self.error
        self.context = context
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        """Response body for this failure."""
        body = {
            "error": self.error,
            "detail": self.detail,
            "retryable": self.retryable,
        }
        body.update(self.context)
        return body


class InvalidInput(PaymentGatewayError):
    status_code = 400
    error = "Invalid input"


class IntentNotFound(PaymentGatewayError):
    status_code = 404
    error = "Reference not found"


class IntentExpired(PaymentGatewayError):
    status_code = 400
    error = "Payment intent expired"


class AlreadyPaid(PaymentGatewayError):
    """Raised by the ledger when a Paid intent is asked to transition again."""
    status_code = 409
    error = "Payment intent already paid"

    def __init__(self, detail: Optional[str] = None, intent=None, **context: Any):
        self.intent = intent
        super().__init__(detail, **context)


class TransactionAlreadyUsed(PaymentGatewayError):
    status_code = 400
    error = "Transaction already used"


class TransactionNotFound(PaymentGatewayError):
    status_code = 400
    error = "Transaction not found"
    retryable = True


class VerificationTimeout(PaymentGatewayError):
    status_code = 202
    error = "Verification timed out"
    retryable = True


class PaymentMismatch(PaymentGatewayError):
    """A transaction was found but does not satisfy the intent's terms."""
    status_code = 400
    error = "Payment does not match intent"

    def __init__(self, detail: Optional[str] = None, check: str = "unknown", **context: Any):
        self.check = check
        super().__init__(detail, check=check, **context)


class UpstreamUnavailable(PaymentGatewayError):
    status_code = 500
    error = "Verification failed"
    retryable = True
