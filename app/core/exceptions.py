"""
Billing error taxonomy.

ConfigurationError and ReconciliationError are operator problems and are
logged at high severity. ValidationError, ExhaustionError and GatewayError
are returned to the caller with a reason code the UI can render.
"""
from typing import Optional


class BillingError(Exception):
    """Base exception for the billing engine."""

    pass


class ConfigurationError(BillingError):
    """Raised for unknown plan or add-on ids. Never defaulted."""

    pass


class ValidationError(BillingError):
    """Raised when a request is well-formed but not acceptable."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


class ExhaustionError(BillingError):
    """Raised when no entitlement remains in either pool."""

    def __init__(self, kind: str, plan_id: Optional[str] = None):
        self.kind = kind
        self.plan_id = plan_id
        super().__init__(f"No {kind} credits remaining")


class GatewayError(BillingError):
    """Raised when the payment gateway fails or a callback is not authentic."""

    def __init__(self, reason: str, message: Optional[str] = None, retryable: bool = False):
        self.reason = reason
        self.retryable = retryable
        super().__init__(message or reason)


class ReconciliationError(BillingError):
    """Payment succeeded but entitlements could not be activated."""

    def __init__(self, transaction_id: int, cause: Optional[str] = None):
        self.transaction_id = transaction_id
        self.cause = cause
        super().__init__(
            f"Activation failed for successful payment transaction_id={transaction_id}: {cause}"
        )
