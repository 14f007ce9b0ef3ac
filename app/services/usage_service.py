"""
Usage meter for plan and add-on entitlements.

Every decrement is a single conditional UPDATE against the store; the
application never reads a counter and writes it back. The subscription pool
is drawn first, then the oldest add-on credit of the same kind.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from app.core.catalog import EntitlementKind, plan_by_id
from app.db.models.addon_credit import AddonCredit
from app.db.models.subscription import Subscription, USAGE_COLUMNS

logger = logging.getLogger(__name__)


@dataclass
class ConsumeResult:
    """Outcome of a consume() call."""
    status: str  # ok | exhausted | no_subscription
    kind: EntitlementKind
    remaining: Optional[int] = None  # None when the pool is unlimited
    source: Optional[str] = None  # subscription | addon
    subscription_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def get_active_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
    """Active, unexpired subscription for a user, or None."""
    now = now or datetime.utcnow()
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status == "active",
            Subscription.end_date > now,
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def get_addon_remaining(db: Session, user_id: int, kind: EntitlementKind) -> int:
    total = db.query(
        func.coalesce(func.sum(AddonCredit.quantity_remaining), 0)
    ).filter(
        AddonCredit.user_id == user_id,
        AddonCredit.entitlement_kind == EntitlementKind(kind).value,
    ).scalar()
    return int(total)


def _consume_subscription(db: Session, subscription: Subscription, kind: EntitlementKind, now: datetime) -> bool:
    used_col, total_col = USAGE_COLUMNS[kind]
    result = db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            Subscription.status == "active",
            Subscription.end_date > now,
            or_(total_col.is_(None), used_col < total_col),
        )
        .values({used_col: used_col + 1})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _consume_addon_credit(db: Session, user_id: int, kind: EntitlementKind) -> Optional[int]:
    """Decrement the oldest non-empty credit row. Returns its id, or None if none is left."""
    while True:
        credit_id = (
            db.query(AddonCredit.id)
            .filter(
                AddonCredit.user_id == user_id,
                AddonCredit.entitlement_kind == kind.value,
                AddonCredit.quantity_remaining > 0,
            )
            .order_by(AddonCredit.created_at.asc(), AddonCredit.id.asc())
            .limit(1)
            .scalar()
        )
        if credit_id is None:
            return None

        result = db.execute(
            update(AddonCredit)
            .where(AddonCredit.id == credit_id, AddonCredit.quantity_remaining > 0)
            .values(quantity_remaining=AddonCredit.quantity_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return credit_id
        # Lost the row to a concurrent request; try the next one


def consume(db: Session, user_id: int, kind) -> ConsumeResult:
    """
    Consume one unit of an entitlement.

    Args:
        db: Database session
        user_id: User ID
        kind: EntitlementKind or its string value

    Returns:
        ConsumeResult with status:
        - ok: one unit consumed; remaining is the count left in the pool used
        - exhausted: subscription pool and add-on credits are both empty
        - no_subscription: no active subscription and no add-on credit
    """
    kind = EntitlementKind(kind)
    now = datetime.utcnow()
    subscription = get_active_subscription(db, user_id, now)

    if subscription is not None and _consume_subscription(db, subscription, kind, now):
        db.commit()
        db.refresh(subscription)
        remaining = subscription.remaining_for(kind)
        logger.info(
            f"Usage consumed: user_id={user_id}, kind={kind.value}, source=subscription, "
            f"subscription_id={subscription.id}, remaining={remaining if remaining is not None else 'unlimited'}"
        )
        return ConsumeResult("ok", kind, remaining, "subscription", subscription.id)

    credit_id = _consume_addon_credit(db, user_id, kind)
    if credit_id is not None:
        db.commit()
        remaining = get_addon_remaining(db, user_id, kind)
        logger.info(
            f"Usage consumed: user_id={user_id}, kind={kind.value}, source=addon, "
            f"credit_id={credit_id}, remaining={remaining}"
        )
        return ConsumeResult(
            "ok", kind, remaining, "addon",
            subscription.id if subscription is not None else None
        )

    db.rollback()
    if subscription is None:
        logger.warning(f"Usage rejected, no active subscription: user_id={user_id}, kind={kind.value}")
        return ConsumeResult("no_subscription", kind, 0)

    logger.warning(
        f"Usage exhausted: user_id={user_id}, kind={kind.value}, "
        f"subscription_id={subscription.id}, plan_id={subscription.plan_id}"
    )
    return ConsumeResult("exhausted", kind, 0, None, subscription.id)


def get_usage_summary(db: Session, user_id: int) -> Dict:
    """
    Read-only entitlement state for GET /me/usage.

    Returns:
        Dictionary with the active plan (if any) and per-kind
        used, total, remaining, unlimited and addon_remaining
    """
    subscription = get_active_subscription(db, user_id)
    plan = plan_by_id(subscription.plan_id) if subscription else None

    features = []
    for kind in EntitlementKind:
        addon_remaining = get_addon_remaining(db, user_id, kind)
        if subscription is None:
            features.append({
                "kind": kind.value,
                "used": 0,
                "total": 0,
                "remaining": 0,
                "unlimited": False,
                "addon_remaining": addon_remaining,
            })
            continue

        total = subscription.total_for(kind)
        features.append({
            "kind": kind.value,
            "used": subscription.used_for(kind),
            "total": total,
            "remaining": subscription.remaining_for(kind),
            "unlimited": total is None,
            "addon_remaining": addon_remaining,
        })

    return {
        "plan_id": subscription.plan_id if subscription else None,
        "plan_name": plan.name if plan else None,
        "subscription_id": subscription.id if subscription else None,
        "end_date": subscription.end_date if subscription else None,
        "features": features,
    }


def expire_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """
    Mark active subscriptions past their end date as expired.

    Idempotent; safe to run from several workers.

    Returns:
        Number of subscriptions expired
    """
    now = now or datetime.utcnow()
    result = db.execute(
        update(Subscription)
        .where(Subscription.status == "active", Subscription.end_date <= now)
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(f"Expired {result.rowcount} subscription(s) as of {now.isoformat()}")
    return result.rowcount
