from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, text
from app.db.base import Base
from app.core.catalog import EntitlementKind


class Subscription(Base):
    """
    A user's plan-based entitlement pool.

    Each entitlement kind has a (used, total) pair. A NULL total is unlimited;
    used is still counted for analytics. Rows are never deleted, only moved
    to expired or cancelled.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active | expired | cancelled

    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=False)

    optimizations_used = Column(Integer, nullable=False, default=0)
    optimizations_total = Column(Integer, nullable=True)
    score_checks_used = Column(Integer, nullable=False, default=0)
    score_checks_total = Column(Integer, nullable=True)
    linkedin_messages_used = Column(Integer, nullable=False, default=0)
    linkedin_messages_total = Column(Integer, nullable=True)
    guided_builds_used = Column(Integer, nullable=False, default=0)
    guided_builds_total = Column(Integer, nullable=True)

    payment_transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True, index=True)
    coupon_used = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # At most one active subscription per user
    __table_args__ = (
        Index(
            "uq_subscriptions_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def used_for(self, kind: EntitlementKind) -> int:
        used_col, _ = USAGE_COLUMNS[kind]
        return getattr(self, used_col.key)

    def total_for(self, kind: EntitlementKind):
        _, total_col = USAGE_COLUMNS[kind]
        return getattr(self, total_col.key)

    def remaining_for(self, kind: EntitlementKind):
        """Remaining credits for a kind, or None when unlimited."""
        total = self.total_for(kind)
        if total is None:
            return None
        return max(0, total - self.used_for(kind))


# (used, total) column pair per entitlement kind
USAGE_COLUMNS = {
    EntitlementKind.OPTIMIZATION: (Subscription.optimizations_used, Subscription.optimizations_total),
    EntitlementKind.SCORE_CHECK: (Subscription.score_checks_used, Subscription.score_checks_total),
    EntitlementKind.LINKEDIN_MESSAGE: (Subscription.linkedin_messages_used, Subscription.linkedin_messages_total),
    EntitlementKind.GUIDED_BUILD: (Subscription.guided_builds_used, Subscription.guided_builds_total),
}

assert set(USAGE_COLUMNS) == set(EntitlementKind), "Every entitlement kind needs usage columns"
