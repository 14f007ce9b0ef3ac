"""
Payment gateway interface.

The orchestrator only needs four things from a gateway: open an order,
authenticate a payment callback, report an order's status, and (for
push-style gateways) parse a signed webhook. Every network call is bounded
by a timeout.
"""
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from app.core.config import GATEWAY_TIMEOUT_SECONDS, PAYMENT_GATEWAY
from app.core.exceptions import ConfigurationError, GatewayError

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="gateway")


@dataclass
class GatewayOrder:
    """Order opened at the gateway, handed to the client to complete checkout."""
    order_id: str
    amount: int
    currency: str
    key_id: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class VerificationCallback:
    """Client- or gateway-delivered proof of payment."""
    order_id: str
    payment_id: Optional[str]
    signature: str
    transaction_id: Optional[int] = None
    payload: Optional[bytes] = None  # raw body for webhook-signed gateways


@dataclass
class GatewayOrderStatus:
    order_id: str
    state: str  # created | paid | failed
    payment_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class GatewayEvent:
    """Authenticated webhook event reduced to what billing cares about."""
    type: str  # payment_succeeded | payment_failed | ignored
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    transaction_id: Optional[int] = None
    reason: Optional[str] = None
    raw_type: str = ""


def call_with_timeout(fn: Callable, timeout: float, *args, **kwargs) -> Any:
    """
    Run a blocking gateway call with an upper bound on wall time.

    Raises:
        GatewayError: reason "timeout", retryable. The remote side may still
        have acted, so callers must not treat this as a failed payment.
    """
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        logger.warning(f"Gateway call timed out after {timeout}s: {getattr(fn, '__name__', fn)}")
        raise GatewayError("timeout", f"Gateway did not respond within {timeout}s", retryable=True)


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    name = "abstract"
    key_id: Optional[str] = None  # public key handed to the checkout client
    client_callbacks = True  # False when payments are only confirmed by signed webhooks

    def __init__(self, timeout: float = GATEWAY_TIMEOUT_SECONDS):
        self.timeout = timeout

    @abstractmethod
    def create_order(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrder:
        """
        Open an order for `amount` minor units.

        Args:
            amount: Amount in minor currency units
            currency: ISO currency code
            idempotency_key: Stable per logical purchase; a retry with the
                same key must not open a second order
            notes: Extra metadata stored with the order

        Returns:
            GatewayOrder for the client checkout
        """
        pass

    @abstractmethod
    def verify_signature(self, callback: VerificationCallback) -> bool:
        """Recompute the callback signature from the shared secret."""
        pass

    @abstractmethod
    def fetch_order(self, order_id: str) -> GatewayOrderStatus:
        """Ask the gateway what happened to an order."""
        pass

    def parse_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        """
        Authenticate and parse a webhook delivery.

        Raises:
            GatewayError: signature_mismatch, or webhooks_not_supported
        """
        raise GatewayError("webhooks_not_supported", f"{self.name} does not deliver webhooks")


def get_gateway(name: Optional[str] = None) -> PaymentGateway:
    """Build the configured gateway (PAYMENT_GATEWAY)."""
    name = (name or PAYMENT_GATEWAY).lower()
    if name == "stripe":
        from app.services.stripe_service import StripeGateway
        return StripeGateway()
    if name == "razorpay":
        from app.services.razorpay_service import RazorpayGateway
        return RazorpayGateway()
    raise ConfigurationError(f"Unknown payment gateway: {name}")
