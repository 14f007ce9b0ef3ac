"""
Razorpay gateway: orders API plus HMAC-signed checkout callbacks.
"""
import logging
from functools import partial
from typing import Dict, Optional
import razorpay
import requests

from app.core.config import GATEWAY_TIMEOUT_SECONDS, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
from app.core.exceptions import ConfigurationError, GatewayError
from app.services.payment_gateway import (
    GatewayOrder,
    GatewayOrderStatus,
    PaymentGateway,
    VerificationCallback,
    call_with_timeout,
)

logger = logging.getLogger(__name__)


class RazorpayGateway(PaymentGateway):
    """Razorpay orders gateway."""

    name = "razorpay"

    def __init__(
        self,
        key_id: Optional[str] = RAZORPAY_KEY_ID,
        key_secret: Optional[str] = RAZORPAY_KEY_SECRET,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        client: Optional[razorpay.Client] = None
    ):
        super().__init__(timeout)
        if client is None:
            if not key_id or not key_secret:
                raise ConfigurationError("Razorpay not configured - RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET required")
            client = razorpay.Client(auth=(key_id, key_secret))
        self.key_id = key_id
        self.client = client

    def _request(self, fn, *args, **kwargs):
        """SDK call bounded twice: the HTTP timeout for the socket, call_with_timeout for wall time."""
        return call_with_timeout(partial(fn, *args, timeout=self.timeout, **kwargs), self.timeout)

    def create_order(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrder:
        """
        Open a Razorpay order, or return the one an earlier attempt opened.

        Razorpay has no idempotency header for orders, so the receipt carries
        the idempotency key and is looked up first. A create that timed out
        on our side may still have gone through.
        """
        receipt = f"txn_{idempotency_key}"
        data = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": {"transaction_id": str(idempotency_key), **(notes or {})},
        }
        try:
            order = self._find_order(receipt)
            if order is not None:
                logger.info(f"Reusing Razorpay order: order_id={order['id']}, receipt={receipt}")
            else:
                order = self._request(self.client.order.create, data=data)
        except razorpay.errors.BadRequestError as e:
            logger.error(f"Razorpay rejected order: {e}")
            raise GatewayError("order_create_failed", str(e))
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError) as e:
            logger.error(f"Razorpay unavailable creating order: {e}")
            raise GatewayError("gateway_unavailable", str(e), retryable=True)
        except requests.exceptions.Timeout as e:
            logger.warning(f"Razorpay timed out creating order: receipt={receipt}, error={e}")
            raise GatewayError("timeout", str(e), retryable=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Razorpay unreachable creating order: {e}")
            raise GatewayError("gateway_unavailable", str(e), retryable=True)

        logger.info(f"Created Razorpay order: order_id={order['id']}, amount={amount}, transaction_id={idempotency_key}")
        return GatewayOrder(
            order_id=order["id"],
            amount=order["amount"],
            currency=order["currency"],
            key_id=self.key_id,
        )

    def _find_order(self, receipt: str) -> Optional[dict]:
        found = self._request(self.client.order.all, data={"receipt": receipt})
        for order in found.get("items", []):
            if order.get("receipt") == receipt:
                return order
        return None

    def verify_signature(self, callback: VerificationCallback) -> bool:
        """HMAC-SHA256 of "order_id|payment_id" with the key secret."""
        if not callback.order_id or not callback.payment_id or not callback.signature:
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": callback.order_id,
                "razorpay_payment_id": callback.payment_id,
                "razorpay_signature": callback.signature,
            })
        except razorpay.errors.SignatureVerificationError:
            logger.warning(f"Razorpay signature mismatch: order_id={callback.order_id}")
            return False
        return True

    def fetch_order(self, order_id: str) -> GatewayOrderStatus:
        try:
            order = self._request(self.client.order.fetch, order_id)
            if order.get("status") != "paid":
                return GatewayOrderStatus(order_id, "created")
            payments = self._request(self.client.order.payments, order_id)
        except (razorpay.errors.BadRequestError, razorpay.errors.ServerError, razorpay.errors.GatewayError) as e:
            logger.error(f"Razorpay error fetching order {order_id}: {e}")
            raise GatewayError("order_fetch_failed", str(e), retryable=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Razorpay unreachable fetching order {order_id}: {e}")
            raise GatewayError("order_fetch_failed", str(e), retryable=True)

        captured = [p for p in payments.get("items", []) if p.get("status") == "captured"]
        payment_id = captured[0]["id"] if captured else None
        return GatewayOrderStatus(order_id, "paid", payment_id)
