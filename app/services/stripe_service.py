"""
Stripe gateway: PaymentIntents for orders, signed webhooks for verification.
"""
import json
import logging
from typing import Dict, Optional
import stripe

from app.core.config import (
    GATEWAY_TIMEOUT_SECONDS,
    STRIPE_PUBLISHABLE_KEY,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from app.core.exceptions import ConfigurationError, GatewayError
from app.services.payment_gateway import (
    GatewayEvent,
    GatewayOrder,
    GatewayOrderStatus,
    PaymentGateway,
    VerificationCallback,
    call_with_timeout,
)

logger = logging.getLogger(__name__)

# Initialize Stripe client
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe gateway disabled")

WEBHOOK_TOLERANCE_SECONDS = 300
FAILED_EVENT_TYPES = ("payment_intent.payment_failed", "payment_intent.canceled")


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntent gateway."""

    name = "stripe"
    client_callbacks = False

    def __init__(
        self,
        publishable_key: Optional[str] = STRIPE_PUBLISHABLE_KEY,
        webhook_secret: Optional[str] = STRIPE_WEBHOOK_SECRET,
        timeout: float = GATEWAY_TIMEOUT_SECONDS
    ):
        super().__init__(timeout)
        self.key_id = publishable_key
        self.webhook_secret = webhook_secret

    def create_order(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrder:
        """Create a PaymentIntent; Stripe replays the same intent for a repeated idempotency key."""
        if not stripe.api_key:
            raise ConfigurationError("Stripe not configured - STRIPE_SECRET_KEY required")

        metadata = {"transaction_id": str(idempotency_key)}
        metadata.update(notes or {})

        try:
            intent = call_with_timeout(
                stripe.PaymentIntent.create,
                self.timeout,
                amount=amount,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"payment_transaction_{idempotency_key}",
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe unreachable creating order: {e}")
            raise GatewayError("gateway_unavailable", str(e), retryable=True)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating order: {e}")
            raise GatewayError("order_create_failed", str(e))

        logger.info(f"Created Stripe PaymentIntent: intent_id={intent.id}, amount={amount}, transaction_id={idempotency_key}")
        return GatewayOrder(
            order_id=intent.id,
            amount=intent.amount,
            currency=intent.currency.upper(),
            key_id=self.key_id,
            client_secret=intent.client_secret,
        )

    def _construct_event(self, payload: bytes, signature: str) -> dict:
        """Verify the Stripe-Signature header, then decode the body as a plain dict."""
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET not configured")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS)
        return json.loads(payload)

    def verify_signature(self, callback: VerificationCallback) -> bool:
        """The signature is the Stripe-Signature header over the raw webhook body."""
        if callback.payload is None:
            return False
        try:
            event = self._construct_event(callback.payload, callback.signature)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe signature verification failed: {e}")
            return False
        return event["data"]["object"].get("id") == callback.order_id

    def parse_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        try:
            event = self._construct_event(payload, signature)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook rejected: {e}")
            raise GatewayError("signature_mismatch", "Invalid webhook signature")

        event_type = event["type"]
        intent = event["data"]["object"]
        metadata = intent.get("metadata") or {}
        transaction_id = metadata.get("transaction_id")
        transaction_id = int(transaction_id) if transaction_id else None

        logger.info(f"Verified webhook event: {event_type}, id={event.get('id')}")

        if event_type == "payment_intent.succeeded":
            return GatewayEvent(
                type="payment_succeeded",
                order_id=intent.get("id"),
                payment_id=intent.get("latest_charge"),
                transaction_id=transaction_id,
                raw_type=event_type,
            )
        if event_type in FAILED_EVENT_TYPES:
            error = intent.get("last_payment_error") or {}
            return GatewayEvent(
                type="payment_failed",
                order_id=intent.get("id"),
                transaction_id=transaction_id,
                reason=error.get("code") or event_type.split(".")[-1],
                raw_type=event_type,
            )
        return GatewayEvent(type="ignored", raw_type=event_type)

    def fetch_order(self, order_id: str) -> GatewayOrderStatus:
        try:
            intent = call_with_timeout(stripe.PaymentIntent.retrieve, self.timeout, order_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error fetching order {order_id}: {e}")
            raise GatewayError("order_fetch_failed", str(e), retryable=True)

        if intent.status == "succeeded":
            return GatewayOrderStatus(order_id, "paid", getattr(intent, "latest_charge", None))
        if intent.status == "canceled":
            return GatewayOrderStatus(order_id, "failed", reason="canceled")
        return GatewayOrderStatus(order_id, "created")
