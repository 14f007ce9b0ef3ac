"""
Payment orchestrator.

Drives one purchase attempt through its states:

    Quoted -> OrderCreated -> (GatewaySucceeded | GatewayFailed | UserCancelled)
           -> Verified -> Activated

or Quoted -> FreeActivated when the grand total is zero.

The PaymentTransaction row is the state. Every transition out of pending is a
conditional update on status, so redelivered callbacks, webhook races and
reconciler runs all converge on a single outcome.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.catalog import ADDON_ONLY_PLAN_ID, Plan, addons_total, require_addon, require_plan
from app.core.config import ACTIVATION_MAX_ATTEMPTS, CURRENCY, ORDER_EXPIRY_HOURS
from app.core.exceptions import GatewayError, ReconciliationError, ValidationError
from app.db.models.payment_transaction import PaymentTransaction
from app.db.models.pending_activation import PendingActivation
from app.services import coupon_service, entitlement_service, wallet_service
from app.services.payment_gateway import PaymentGateway, VerificationCallback, get_gateway

logger = logging.getLogger(__name__)


@dataclass
class Quote:
    plan_id: Optional[str]
    plan_price: int
    discount: int
    wallet_deduction: int
    addons_total: int
    grand_total: int
    currency: str
    coupon_code: Optional[str] = None
    coupon_applied: bool = False
    coupon_reason: Optional[str] = None


@dataclass
class OrderDetails:
    transaction_id: int
    order_id: str
    amount: int
    currency: str
    gateway: str
    key_id: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class PurchaseResult:
    transaction_id: int
    status: str  # pending | awaiting_order | free_activated | activation_queued
    quote: Quote
    order: Optional[OrderDetails] = None
    subscription_id: Optional[int] = None


@dataclass
class VerificationResult:
    status: str  # activated | already_processed | activation_queued
    transaction_id: int
    subscription_id: Optional[int] = None


def _purchase_type(plan: Optional[Plan], addons: Dict[str, int]) -> str:
    if plan is None:
        return "addon_only"
    return "plan_with_addons" if addons else "plan"


class PaymentOrchestrator:
    """Coordinates coupon, wallet, gateway and activation for purchases."""

    def __init__(self, gateway: Optional[PaymentGateway] = None, currency: str = CURRENCY):
        self._gateway = gateway
        self.currency = currency

    @property
    def gateway(self) -> PaymentGateway:
        # Resolved on first use so quotes and free activations need no gateway keys
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    # ------------------------------------------------------------------
    # Quote
    # ------------------------------------------------------------------

    def _validate(self, plan_id: Optional[str], addons: Optional[Dict[str, int]]) -> Tuple[Optional[Plan], Dict[str, int]]:
        if plan_id == ADDON_ONLY_PLAN_ID:
            plan_id = None
        plan = require_plan(plan_id) if plan_id else None

        addons = dict(addons or {})
        for addon_id, units in addons.items():
            require_addon(addon_id)
            if not isinstance(units, int) or isinstance(units, bool) or units <= 0:
                raise ValidationError("invalid_quantity", f"Add-on {addon_id} quantity must be a positive integer")

        if plan is None and not addons:
            raise ValidationError("empty_purchase", "Select a plan or at least one add-on")
        return plan, addons

    def _build_quote(
        self,
        plan: Optional[Plan],
        addons: Dict[str, int],
        coupon: Optional[coupon_service.CouponResult],
        wallet_deduction: int
    ) -> Quote:
        plan_price = plan.price if plan else 0
        discount = coupon.discount if coupon and coupon.applied else 0
        addons_sum = addons_total(addons)
        grand_total = max(0, plan_price - discount - wallet_deduction) + addons_sum
        return Quote(
            plan_id=plan.id if plan else None,
            plan_price=plan_price,
            discount=discount,
            wallet_deduction=wallet_deduction,
            addons_total=addons_sum,
            grand_total=grand_total,
            currency=self.currency,
            coupon_code=coupon.code if coupon and coupon.applied else None,
            coupon_applied=bool(coupon and coupon.applied),
            coupon_reason=coupon.reason if coupon else None,
        )

    def quote(
        self,
        db: Session,
        user_id: int,
        plan_id: Optional[str],
        addons: Optional[Dict[str, int]] = None,
        coupon_code: Optional[str] = None,
        use_wallet: bool = False
    ) -> Quote:
        """
        Price a purchase without side effects.

        grand_total = max(0, plan price after coupon - wallet deduction) + add-ons total

        Raises:
            ConfigurationError: Unknown plan or add-on id
            ValidationError: Bad quantities or an empty selection
        """
        plan, addons = self._validate(plan_id, addons)
        coupon = None
        if coupon_code:
            coupon = coupon_service.preview(db, plan.id if plan else ADDON_ONLY_PLAN_ID, coupon_code, user_id)

        wallet_deduction = 0
        if use_wallet and plan is not None:
            after_coupon = plan.price - (coupon.discount if coupon and coupon.applied else 0)
            wallet_deduction = max(0, min(after_coupon, wallet_service.get_available_balance(db, user_id)))

        return self._build_quote(plan, addons, coupon, wallet_deduction)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    def start_purchase(
        self,
        db: Session,
        user_id: int,
        plan_id: Optional[str],
        addons: Optional[Dict[str, int]] = None,
        coupon_code: Optional[str] = None,
        use_wallet: bool = False
    ) -> PurchaseResult:
        """
        Open a purchase: claim the coupon, write the pending transaction and
        hold the wallet deduction in one commit, then either activate for
        free or open the gateway order.

        Raises:
            ConfigurationError: Unknown plan or add-on id
            ValidationError: Rejected coupon, bad quantities, empty selection
            GatewayError: Gateway rejected the order (purchase is failed)
        """
        plan, addons = self._validate(plan_id, addons)

        try:
            coupon = None
            if coupon_code:
                coupon = coupon_service.apply(db, plan.id if plan else ADDON_ONLY_PLAN_ID, coupon_code, user_id)
                if not coupon.applied:
                    raise ValidationError(coupon.reason, f"Coupon {coupon_service.normalize_code(coupon_code)} rejected: {coupon.reason}")

            plan_price = plan.price if plan else 0
            discount = coupon.discount if coupon else 0
            tx = PaymentTransaction(
                user_id=user_id,
                plan_id=plan.id if plan else None,
                purchase_type=_purchase_type(plan, addons),
                status="pending",
                amount=plan_price + addons_total(addons),
                discount_amount=discount,
                addons_total=addons_total(addons),
                currency=self.currency,
                coupon_code=coupon.code if coupon else None,
                addons=addons or None,
            )
            db.add(tx)
            db.flush()

            wallet_deduction = 0
            if use_wallet and plan is not None:
                wallet_deduction = wallet_service.reserve(db, user_id, plan_price - discount, tx.id)

            quote = self._build_quote(plan, addons, coupon, wallet_deduction)
            tx.wallet_deduction_amount = wallet_deduction
            tx.final_amount = quote.grand_total
            db.commit()
        except Exception:
            db.rollback()
            raise

        transaction_id = tx.id
        logger.info(
            f"Purchase started: transaction_id={transaction_id}, user_id={user_id}, plan_id={quote.plan_id}, "
            f"addons={addons}, discount={quote.discount}, wallet_deduction={quote.wallet_deduction}, "
            f"grand_total={quote.grand_total}"
        )

        if quote.grand_total == 0:
            verification = self._complete_payment(db, tx, payment_id=None)
            status = "free_activated" if verification.status != "activation_queued" else verification.status
            logger.info(f"Free activation: transaction_id={transaction_id}, status={status}")
            return PurchaseResult(transaction_id, status, quote, subscription_id=verification.subscription_id)

        try:
            order = self.create_order(db, transaction_id)
        except GatewayError as e:
            if not e.retryable:
                raise
            return PurchaseResult(transaction_id, "awaiting_order", quote)
        return PurchaseResult(transaction_id, "pending", quote, order=order)

    def _get_transaction(self, db: Session, transaction_id: int, user_id: Optional[int] = None) -> PaymentTransaction:
        tx = db.get(PaymentTransaction, transaction_id)
        if tx is None or (user_id is not None and tx.user_id != user_id):
            raise ValidationError("unknown_transaction", f"Payment transaction {transaction_id} not found")
        return tx

    def create_order(self, db: Session, transaction_id: int, user_id: Optional[int] = None) -> OrderDetails:
        """
        Open the gateway order for a pending transaction.

        Idempotent: a transaction that already has an order gets it back
        without a gateway call. The transaction id is the gateway
        idempotency key.

        Raises:
            ValidationError: unknown_transaction, transaction_not_pending
            GatewayError: retryable on timeout (transaction stays pending);
                non-retryable on rejection (transaction is failed)
        """
        tx = self._get_transaction(db, transaction_id, user_id)
        if tx.status != "pending":
            raise ValidationError("transaction_not_pending", f"Transaction {tx.id} is {tx.status}")

        if tx.order_id:
            return OrderDetails(tx.id, tx.order_id, tx.final_amount, tx.currency, self.gateway.name, self.gateway.key_id)

        try:
            order = self.gateway.create_order(
                tx.final_amount,
                tx.currency,
                str(tx.id),
                notes={"user_id": str(tx.user_id)},
            )
        except GatewayError as e:
            if e.retryable:
                logger.warning(f"Order creation deferred: transaction_id={tx.id}, reason={e.reason}; left pending for reconciliation")
                raise
            logger.error(f"Order creation rejected: transaction_id={tx.id}, reason={e.reason}")
            self.fail_payment(db, tx.id, f"order_create_failed: {e.reason}")
            raise

        result = db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == tx.id, PaymentTransaction.order_id.is_(None))
            .values(order_id=order.order_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(tx)
        if result.rowcount != 1:
            logger.info(f"Order already recorded for transaction_id={tx.id}: order_id={tx.order_id}")
        else:
            logger.info(f"Order created: transaction_id={tx.id}, order_id={order.order_id}, amount={order.amount}")

        return OrderDetails(
            transaction_id=tx.id,
            order_id=tx.order_id,
            amount=tx.final_amount,
            currency=tx.currency,
            gateway=self.gateway.name,
            key_id=order.key_id,
            client_secret=order.client_secret if tx.order_id == order.order_id else None,
        )

    # ------------------------------------------------------------------
    # Verification and activation
    # ------------------------------------------------------------------

    def verify_payment(self, db: Session, callback: VerificationCallback) -> VerificationResult:
        """
        Authenticate a payment callback, then mark the purchase paid and
        activate it exactly once.

        Raises:
            GatewayError: signature_mismatch (no state is touched)
            ValidationError: unknown_order, transaction_mismatch, transaction_not_pending
        """
        if not self.gateway.verify_signature(callback):
            logger.warning(f"Payment signature rejected: order_id={callback.order_id}, transaction_id={callback.transaction_id}")
            raise GatewayError("signature_mismatch", "Payment signature verification failed")

        tx = db.query(PaymentTransaction).filter(PaymentTransaction.order_id == callback.order_id).first()
        if tx is None:
            raise ValidationError("unknown_order", f"No transaction for order {callback.order_id}")
        if callback.transaction_id is not None and callback.transaction_id != tx.id:
            logger.warning(f"Callback transaction mismatch: order_id={callback.order_id}, claimed={callback.transaction_id}, actual={tx.id}")
            raise ValidationError("transaction_mismatch", "Order does not belong to this transaction")

        return self._complete_payment(db, tx, callback.payment_id)

    def _claim_success(self, db: Session, transaction_id: int, payment_id: Optional[str]) -> bool:
        result = db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id, PaymentTransaction.status == "pending")
            .values(status="success", payment_id=payment_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _complete_payment(self, db: Session, tx: PaymentTransaction, payment_id: Optional[str]) -> VerificationResult:
        transaction_id = tx.id
        user_id, plan_id, addons, coupon_code = tx.user_id, tx.plan_id, tx.addons or {}, tx.coupon_code

        if not self._claim_success(db, transaction_id, payment_id):
            db.rollback()
            db.refresh(tx)
            if tx.status == "success":
                logger.info(f"Duplicate verification ignored: transaction_id={transaction_id}")
                return VerificationResult("already_processed", transaction_id, tx.subscription_id)
            if tx.status == "failed":
                return self._recover_late_payment(db, tx, payment_id)
            logger.error(f"Payment reported for {tx.status} transaction_id={transaction_id}, payment_id={payment_id}")
            raise ValidationError("transaction_not_pending", f"Transaction {transaction_id} is {tx.status}")

        try:
            activation = entitlement_service.activate(db, user_id, plan_id, addons, transaction_id, coupon_code)
            db.commit()
        except Exception as e:
            db.rollback()
            self._queue_activation(db, transaction_id, payment_id, e)
            return VerificationResult("activation_queued", transaction_id)

        logger.info(
            f"Payment verified and activated: transaction_id={transaction_id}, user_id={user_id}, "
            f"payment_id={payment_id}, subscription_id={activation.subscription_id}"
        )
        return VerificationResult("activated", transaction_id, activation.subscription_id)

    def _recover_late_payment(self, db: Session, tx: PaymentTransaction, payment_id: Optional[str]) -> VerificationResult:
        """
        A verified payment for a purchase already failed (abandoned, cancelled
        or declined before a retry went through). The money has moved, so the
        purchase is revived as success and its activation parked in the outbox.

        The wallet hold and coupon use given back by fail_payment() are taken
        again; any shortfall is logged for manual review.
        """
        transaction_id, previous_reason = tx.id, tx.failure_reason
        revived = db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id, PaymentTransaction.status == "failed")
            .values(status="success", payment_id=payment_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if revived.rowcount != 1:
            db.rollback()
            db.refresh(tx)
            logger.info(f"Late payment already recovered: transaction_id={transaction_id}, status={tx.status}")
            return VerificationResult("already_processed", transaction_id, tx.subscription_id)

        failure = ReconciliationError(
            transaction_id, f"late payment payment_id={payment_id} after failure reason={previous_reason}"
        )
        logger.critical(str(failure))

        if tx.wallet_deduction_amount:
            held = wallet_service.reserve(db, tx.user_id, tx.wallet_deduction_amount, transaction_id)
            if held < tx.wallet_deduction_amount:
                logger.critical(
                    f"Late payment wallet shortfall: transaction_id={transaction_id}, "
                    f"expected={tx.wallet_deduction_amount}, held={held}"
                )
        if tx.coupon_code and not coupon_service.reclaim(db, tx.coupon_code):
            logger.critical(f"Late payment coupon over cap: transaction_id={transaction_id}, code={tx.coupon_code}")

        if db.query(PendingActivation.id).filter(PendingActivation.payment_transaction_id == transaction_id).first() is None:
            db.add(PendingActivation(
                payment_transaction_id=transaction_id,
                status="pending",
                attempts=0,
                last_error=failure.cause,
            ))
        db.commit()
        logger.info(f"Late payment queued for activation: transaction_id={transaction_id}")
        return VerificationResult("activation_queued", transaction_id)

    def _queue_activation(self, db: Session, transaction_id: int, payment_id: Optional[str], error: Exception) -> None:
        """Record the payment as successful and park its activation in the outbox."""
        failure = ReconciliationError(transaction_id, f"{type(error).__name__}: {error}")
        logger.critical(str(failure), exc_info=error)

        self._claim_success(db, transaction_id, payment_id)
        existing = db.query(PendingActivation).filter(
            PendingActivation.payment_transaction_id == transaction_id
        ).first()
        if existing is None:
            db.add(PendingActivation(
                payment_transaction_id=transaction_id,
                status="pending",
                attempts=1,
                last_error=failure.cause,
            ))
        db.commit()
        logger.info(f"Activation queued for retry: transaction_id={transaction_id}")

    # ------------------------------------------------------------------
    # Failure and cancellation
    # ------------------------------------------------------------------

    def fail_payment(self, db: Session, transaction_id: int, reason: str) -> bool:
        """
        Move a pending purchase to failed, releasing its wallet hold and
        coupon use. Returns False if it was no longer pending.
        """
        tx = self._get_transaction(db, transaction_id)
        result = db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == tx.id, PaymentTransaction.status == "pending")
            .values(status="failed", failure_reason=reason, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False

        wallet_service.release_reservation(db, tx.id)
        if tx.coupon_code:
            coupon_service.release(db, tx.coupon_code)
        db.commit()
        logger.info(f"Payment failed: transaction_id={tx.id}, user_id={tx.user_id}, reason={reason}")
        return True

    def cancel_purchase(self, db: Session, user_id: int, transaction_id: int) -> bool:
        """
        User cancellation of their own pending purchase.

        Raises:
            ValidationError: unknown_transaction, already_paid
        """
        tx = self._get_transaction(db, transaction_id, user_id)
        if self.fail_payment(db, tx.id, "user_cancelled"):
            return True
        db.refresh(tx)
        if tx.status == "success":
            raise ValidationError("already_paid", f"Transaction {tx.id} has already been paid")
        return False

    # ------------------------------------------------------------------
    # Webhooks and reconciliation
    # ------------------------------------------------------------------

    def handle_webhook(self, db: Session, payload: bytes, signature: str) -> str:
        """
        Apply a signed gateway webhook.

        Returns:
            activated, already_processed, activation_queued, failed, ignored
            or unknown_order

        Raises:
            GatewayError: signature_mismatch
        """
        event = self.gateway.parse_webhook(payload, signature)
        if event.type == "ignored":
            return "ignored"

        tx = None
        if event.order_id:
            tx = db.query(PaymentTransaction).filter(PaymentTransaction.order_id == event.order_id).first()
        if tx is None and event.transaction_id is not None:
            tx = db.get(PaymentTransaction, event.transaction_id)
        if tx is None:
            logger.warning(f"Webhook for unknown order: type={event.raw_type}, order_id={event.order_id}")
            return "unknown_order"

        if event.type == "payment_succeeded":
            return self._complete_payment(db, tx, event.payment_id).status

        if self.fail_payment(db, tx.id, event.reason or "gateway_failed"):
            return "failed"
        return "already_processed"

    def reconcile_pending_orders(
        self,
        db: Session,
        older_than: timedelta = timedelta(minutes=15),
        now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Settle purchases left pending by timeouts or lost callbacks.

        Paid orders are completed, failed orders are failed, and orders still
        unpaid after ORDER_EXPIRY_HOURS are failed as abandoned.

        Returns:
            Counts per outcome
        """
        now = now or datetime.utcnow()
        cutoff = now - older_than
        expiry_cutoff = now - timedelta(hours=ORDER_EXPIRY_HOURS)
        counts = {"completed": 0, "failed": 0, "abandoned": 0, "still_pending": 0, "errors": 0}

        pending = (
            db.query(PaymentTransaction)
            .filter(PaymentTransaction.status == "pending", PaymentTransaction.created_at <= cutoff)
            .order_by(PaymentTransaction.id.asc())
            .all()
        )
        for tx in pending:
            try:
                outcome = self._reconcile_one(db, tx, expiry_cutoff)
            except (GatewayError, ValidationError) as e:
                db.rollback()
                logger.warning(f"Reconcile skipped transaction_id={tx.id}, order_id={tx.order_id}: {e.reason}")
                outcome = "errors"
            counts[outcome] += 1

        logger.info(f"Reconciled pending orders: {counts}")
        return counts

    def _reconcile_one(self, db: Session, tx: PaymentTransaction, expiry_cutoff: datetime) -> str:
        if tx.final_amount == 0:
            # Free activation interrupted before it completed
            self._complete_payment(db, tx, None)
            return "completed"

        if not tx.order_id:
            if tx.created_at <= expiry_cutoff:
                self.fail_payment(db, tx.id, "abandoned")
                return "abandoned"
            return "still_pending"

        status = self.gateway.fetch_order(tx.order_id)
        if status.state == "paid":
            self._complete_payment(db, tx, status.payment_id)
            return "completed"
        if status.state == "failed":
            self.fail_payment(db, tx.id, status.reason or "gateway_failed")
            return "failed"
        if tx.created_at <= expiry_cutoff:
            # A payment arriving after this is recovered by _recover_late_payment()
            self.fail_payment(db, tx.id, "abandoned")
            return "abandoned"
        return "still_pending"

    def retry_pending_activations(self, db: Session, max_attempts: int = ACTIVATION_MAX_ATTEMPTS) -> Dict[str, int]:
        """
        Drain the activation outbox.

        Each attempt is claimed with a conditional update on the attempt
        counter so concurrent workers never activate the same row twice.
        Rows that keep failing move to manual_review.
        """
        counts = {"done": 0, "retrying": 0, "manual_review": 0}
        rows = (
            db.query(PendingActivation)
            .filter(PendingActivation.status == "pending")
            .order_by(PendingActivation.id.asc())
            .all()
        )
        for row in rows:
            row_id, attempts = row.id, row.attempts
            claimed = db.execute(
                update(PendingActivation)
                .where(
                    PendingActivation.id == row_id,
                    PendingActivation.status == "pending",
                    PendingActivation.attempts == attempts,
                )
                .values(attempts=attempts + 1, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if claimed.rowcount != 1:
                continue
            attempts += 1

            tx = db.get(PaymentTransaction, row.payment_transaction_id)
            try:
                entitlement_service.activate(db, tx.user_id, tx.plan_id, tx.addons or {}, tx.id, tx.coupon_code)
                db.execute(
                    update(PendingActivation)
                    .where(PendingActivation.id == row_id)
                    .values(status="done", last_error=None, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                counts["done"] += 1
                logger.info(f"Queued activation completed: transaction_id={tx.id}, attempts={attempts}")
            except Exception as e:
                db.rollback()
                status = "manual_review" if attempts >= max_attempts else "pending"
                db.execute(
                    update(PendingActivation)
                    .where(PendingActivation.id == row_id)
                    .values(status=status, last_error=f"{type(e).__name__}: {e}", updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if status == "manual_review":
                    counts["manual_review"] += 1
                    logger.critical(
                        f"Activation needs manual review: transaction_id={row.payment_transaction_id}, attempts={attempts}, error={e}",
                        exc_info=e,
                    )
                else:
                    counts["retrying"] += 1
                    logger.error(f"Queued activation failed: transaction_id={row.payment_transaction_id}, attempts={attempts}, error={e}")

        return counts
