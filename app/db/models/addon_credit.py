from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint, Index
from app.db.base import Base


class AddonCredit(Base):
    """
    Credits bought as add-ons, independent of any subscription.

    Drawn down by the usage meter once the subscription pool for the same
    kind is empty. Rows reaching zero stay behind as history.
    """
    __tablename__ = "user_addon_credits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    addon_id = Column(String, nullable=False)
    entitlement_kind = Column(String, nullable=False)
    quantity_purchased = Column(Integer, nullable=False)
    quantity_remaining = Column(Integer, nullable=False)
    payment_transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("quantity_remaining >= 0", name="ck_addon_credit_remaining_non_negative"),
        Index("idx_addon_credit_user_kind", "user_id", "entitlement_kind"),
    )
