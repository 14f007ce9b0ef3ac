"""
Entitlement activator.

Turns a completed purchase into entitlements: add-on credit rows, a new
subscription, and settlement of the wallet hold. Runs inside the caller's
transaction and only flushes, so a failure anywhere rolls back every step
together.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.catalog import EntitlementKind, FREE_TRIAL_PLAN_ID, Plan, require_addon, require_plan
from app.core.exceptions import ValidationError
from app.db.models.addon_credit import AddonCredit
from app.db.models.payment_transaction import PaymentTransaction
from app.db.models.subscription import Subscription, USAGE_COLUMNS
from app.services import wallet_service

logger = logging.getLogger(__name__)

FREE_TRIAL_MARKER = "free_trial"


@dataclass
class ActivationResult:
    subscription_id: Optional[int] = None
    addon_credit_ids: List[int] = field(default_factory=list)
    superseded_subscription_ids: List[int] = field(default_factory=list)
    wallet_settled: int = 0
    already_active: bool = False


def _merge_totals(plan: Plan, previous: List[Subscription]) -> Dict[EntitlementKind, Optional[int]]:
    """
    New pool totals after superseding `previous`.

    Remaining bounded credit on an old subscription carries over unless the
    new total for that kind is unlimited. Unlimited old pools carry nothing.
    """
    totals = {}
    for kind in EntitlementKind:
        total = plan.total_for(kind)
        if total is not None:
            for old in previous:
                remaining = old.remaining_for(kind)
                if remaining:
                    total += remaining
        totals[kind] = total
    return totals


def _supersede_active(db: Session, user_id: int, now: datetime) -> List[Subscription]:
    """
    Close the user's active subscriptions and return the ones whose credits
    carry over. Rows already past their end date are expired, not merged.
    """
    active = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status == "active")
        .order_by(Subscription.id.asc())
        .all()
    )
    superseded = []
    for subscription in active:
        lapsed = subscription.end_date is not None and subscription.end_date <= now
        result = db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, Subscription.status == "active")
            .values(status="expired" if lapsed else "cancelled", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Lost to a concurrent activation; it will have merged this row itself
            continue
        if lapsed:
            logger.info(f"Expired lapsed subscription_id={subscription.id} for user_id={user_id} before activation")
        else:
            superseded.append(subscription)
    if superseded:
        # Counters may have moved since the query above
        for subscription in superseded:
            db.refresh(subscription)
    db.flush()
    return superseded


def _grant_addons(
    db: Session,
    user_id: int,
    addons: Dict[str, int],
    transaction_id: Optional[int]
) -> List[int]:
    credit_ids = []
    for addon_id, units in sorted(addons.items()):
        addon = require_addon(addon_id)
        quantity = addon.quantity * units
        credit = AddonCredit(
            user_id=user_id,
            addon_id=addon.id,
            entitlement_kind=addon.kind.value,
            quantity_purchased=quantity,
            quantity_remaining=quantity,
            payment_transaction_id=transaction_id,
        )
        db.add(credit)
        db.flush()
        credit_ids.append(credit.id)
        logger.info(
            f"Add-on credit granted: user_id={user_id}, addon_id={addon.id}, "
            f"kind={addon.kind.value}, quantity={quantity}, transaction_id={transaction_id}"
        )
    return credit_ids


def _create_subscription(
    db: Session,
    user_id: int,
    plan: Plan,
    transaction_id: Optional[int],
    coupon_code: Optional[str],
    result: ActivationResult
) -> Subscription:
    now = datetime.utcnow()
    previous = _supersede_active(db, user_id, now)
    totals = _merge_totals(plan, previous)
    result.superseded_subscription_ids = [s.id for s in previous]

    values = {
        "user_id": user_id,
        "plan_id": plan.id,
        "status": "active",
        "start_date": now,
        "end_date": now + plan.validity,
        "payment_transaction_id": transaction_id,
        "coupon_used": coupon_code,
    }
    for kind, (used_col, total_col) in USAGE_COLUMNS.items():
        values[used_col.key] = 0
        values[total_col.key] = totals[kind]

    subscription = Subscription(**values)
    db.add(subscription)
    db.flush()

    if previous:
        logger.info(
            f"Superseded subscriptions {result.superseded_subscription_ids} for user_id={user_id}; "
            f"merged totals into subscription_id={subscription.id}"
        )
    return subscription


def activate(
    db: Session,
    user_id: int,
    plan_id: Optional[str],
    addons: Optional[Dict[str, int]],
    transaction_id: Optional[int],
    coupon_code: Optional[str] = None
) -> ActivationResult:
    """
    Grant what a purchase paid for.

    Steps, all in the caller's transaction:
    add-on credits, supersede of the prior active subscription, the new
    subscription, settlement of the wallet hold, and the link from the
    payment transaction to the subscription.

    Re-running for a transaction that was already activated is a no-op.

    Args:
        db: Database session
        user_id: User ID
        plan_id: Plan id, or None for add-on only purchases
        addons: {addon_id: units}
        transaction_id: Originating PaymentTransaction id
        coupon_code: Coupon recorded on the subscription

    Returns:
        ActivationResult

    Raises:
        ConfigurationError: Unknown plan or add-on id
    """
    addons = addons or {}
    plan = require_plan(plan_id) if plan_id else None
    for addon_id in addons:
        require_addon(addon_id)

    result = ActivationResult()

    if transaction_id is not None:
        existing_sub = db.query(Subscription).filter(
            Subscription.payment_transaction_id == transaction_id
        ).first()
        existing_credit = db.query(AddonCredit.id).filter(
            AddonCredit.payment_transaction_id == transaction_id
        ).first()
        if existing_sub is not None or existing_credit is not None:
            logger.info(f"Activation already applied for transaction_id={transaction_id}")
            result.already_active = True
            result.subscription_id = existing_sub.id if existing_sub else None
            return result

    result.addon_credit_ids = _grant_addons(db, user_id, addons, transaction_id)

    if plan is not None:
        subscription = _create_subscription(db, user_id, plan, transaction_id, coupon_code, result)
        result.subscription_id = subscription.id

    if transaction_id is not None:
        result.wallet_settled = wallet_service.settle_reservation(db, transaction_id)
        if result.subscription_id is not None:
            db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.id == transaction_id)
                .values(subscription_id=result.subscription_id)
                .execution_options(synchronize_session=False)
            )

    db.flush()
    logger.info(
        f"Entitlements activated: user_id={user_id}, plan_id={plan_id}, "
        f"subscription_id={result.subscription_id}, addon_credits={len(result.addon_credit_ids)}, "
        f"transaction_id={transaction_id}"
    )
    return result


def has_used_free_trial(db: Session, user_id: int) -> bool:
    return db.query(Subscription.id).filter(
        Subscription.user_id == user_id,
        Subscription.coupon_used == FREE_TRIAL_MARKER,
    ).first() is not None


def activate_free_trial(db: Session, user_id: int) -> ActivationResult:
    """
    Grant the trial plan once per user lifetime. Commits.

    Raises:
        ValidationError: free_trial_used
    """
    if has_used_free_trial(db, user_id):
        logger.warning(f"Free trial already used: user_id={user_id}")
        raise ValidationError("free_trial_used", "Free trial has already been used")

    result = activate(db, user_id, FREE_TRIAL_PLAN_ID, {}, None, coupon_code=FREE_TRIAL_MARKER)
    db.commit()
    logger.info(f"Free trial activated: user_id={user_id}, subscription_id={result.subscription_id}")
    return result
