"""
Coupon engine.

Evaluates a coupon code against a plan and yields an integer discount in
paise. Capped coupons claim a global use with a conditional update in the
caller's transaction, so the cap holds under concurrent purchases.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.catalog import ADDON_ONLY_PLAN_ID, require_plan
from app.db.models.coupon_usage import CouponUsage

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class CouponRule:
    code: str
    plan_ids: FrozenSet[str]
    percent_off: int
    usage_cap: Optional[int] = None

    def applies_to(self, plan_id: str) -> bool:
        return WILDCARD in self.plan_ids or plan_id in self.plan_ids


@dataclass
class CouponResult:
    applied: bool
    code: Optional[str] = None
    discount: int = 0
    final_amount: int = 0
    reason: Optional[str] = None


COUPON_RULES: Dict[str, CouponRule] = {
    rule.code: rule
    for rule in [
        CouponRule("FULLSUPPORT", frozenset({"career_pro_max"}), 100),
        CouponRule("FIRST100", frozenset({"lite_check"}), 100),
        CouponRule("FIRST500", frozenset({"lite_check"}), 98, usage_cap=500),
        CouponRule("WORTHYONE", frozenset({"career_pro_max"}), 50),
    ]
}


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def compute_discount(price: int, percent_off: int) -> int:
    """Percentage discount floored to the paise."""
    return price * percent_off // 100


def _rejected(reason: str, price: int = 0) -> CouponResult:
    return CouponResult(applied=False, discount=0, final_amount=price, reason=reason)


def _evaluate(plan_id: str, code: str):
    """Return (rule, price) for an applicable coupon, or a rejected CouponResult."""
    normalized = normalize_code(code)
    rule = COUPON_RULES.get(normalized)
    if rule is None:
        price = 0 if plan_id == ADDON_ONLY_PLAN_ID else require_plan(plan_id).price
        return None, _rejected("invalid_code", price)

    if plan_id == ADDON_ONLY_PLAN_ID:
        return None, _rejected("not_applicable", 0)

    plan = require_plan(plan_id)
    if not rule.applies_to(plan.id):
        return None, _rejected("not_applicable", plan.price)

    return rule, plan.price


def _applied(rule: CouponRule, price: int) -> CouponResult:
    discount = compute_discount(price, rule.percent_off)
    return CouponResult(applied=True, code=rule.code, discount=discount, final_amount=price - discount)


def _ensure_counter(db: Session, code: str) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        if db.get(CouponUsage, code) is None:
            db.add(CouponUsage(code=code, uses=0))
            db.flush()
        return
    db.execute(insert(CouponUsage).values(code=code, uses=0).on_conflict_do_nothing(index_elements=["code"]))


def _claim_use(db: Session, rule: CouponRule) -> bool:
    _ensure_counter(db, rule.code)
    result = db.execute(
        update(CouponUsage)
        .where(CouponUsage.code == rule.code, CouponUsage.uses < rule.usage_cap)
        .values(uses=CouponUsage.uses + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_usage_count(db: Session, code: str) -> int:
    counter = db.get(CouponUsage, normalize_code(code))
    return counter.uses if counter else 0


def preview(db: Session, plan_id: str, code: str, user_id: Optional[int] = None) -> CouponResult:
    """
    Check a coupon without claiming a use.

    Raises:
        ConfigurationError: Unknown plan id
    """
    rule, outcome = _evaluate(plan_id, code)
    if rule is None:
        return outcome
    price = outcome

    if rule.usage_cap is not None and get_usage_count(db, rule.code) >= rule.usage_cap:
        return _rejected("usage_limit_reached", price)

    return _applied(rule, price)


def apply(db: Session, plan_id: str, code: str, user_id: Optional[int] = None) -> CouponResult:
    """
    Apply a coupon to a plan, claiming a global use for capped coupons.

    The claim is part of the caller's transaction: rolling back gives the use
    back, committing keeps it. Use release() if a committed purchase fails.

    Args:
        db: Database session
        plan_id: Plan id or the add-on only pseudo-plan
        code: Coupon code as entered (case and whitespace insensitive)
        user_id: Applying user, for logging

    Returns:
        CouponResult, applied or rejected with reason
        (invalid_code, not_applicable, usage_limit_reached)

    Raises:
        ConfigurationError: Unknown plan id
    """
    rule, outcome = _evaluate(plan_id, code)
    if rule is None:
        logger.warning(f"Coupon rejected: code={normalize_code(code)}, plan_id={plan_id}, user_id={user_id}, reason={outcome.reason}")
        return outcome
    price = outcome

    if rule.usage_cap is not None and not _claim_use(db, rule):
        logger.warning(f"Coupon cap reached: code={rule.code}, cap={rule.usage_cap}, user_id={user_id}")
        return _rejected("usage_limit_reached", price)

    result = _applied(rule, price)
    logger.info(
        f"Coupon applied: code={rule.code}, plan_id={plan_id}, user_id={user_id}, "
        f"discount={result.discount}, final_amount={result.final_amount}"
    )
    return result


def release(db: Session, code: Optional[str]) -> None:
    """Give back a claimed use after a purchase fails."""
    rule = COUPON_RULES.get(normalize_code(code))
    if rule is None or rule.usage_cap is None:
        return
    db.execute(
        update(CouponUsage)
        .where(CouponUsage.code == rule.code, CouponUsage.uses > 0)
        .values(uses=CouponUsage.uses - 1)
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Coupon use released: code={rule.code}")


def reclaim(db: Session, code: Optional[str]) -> bool:
    """
    Take back a use released by a failed purchase that was paid late.

    Returns False only when the cap has since been reached; uncapped
    coupons have nothing to take back.
    """
    rule = COUPON_RULES.get(normalize_code(code))
    if rule is None or rule.usage_cap is None:
        return True
    claimed = _claim_use(db, rule)
    if claimed:
        logger.info(f"Coupon use reclaimed: code={rule.code}")
    return claimed
