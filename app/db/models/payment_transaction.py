from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from app.db.base import Base


class PaymentTransaction(Base):
    """
    One purchase attempt.

    Created pending when the order is opened; moves to success or failed
    exactly once and is immutable afterwards. All amounts are paise.
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=True)  # NULL for add-on only purchases
    purchase_type = Column(String, nullable=False, default="plan")  # plan | plan_with_addons | addon_only
    status = Column(String, nullable=False, default="pending", index=True)  # pending | success | failed

    amount = Column(Integer, nullable=False, default=0)  # gross: plan price + add-ons
    discount_amount = Column(Integer, nullable=False, default=0)
    wallet_deduction_amount = Column(Integer, nullable=False, default=0)
    addons_total = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=False, default=0)  # grand total charged at the gateway
    currency = Column(String(3), nullable=False, default="INR")

    coupon_code = Column(String, nullable=True)
    addons = Column(JSON, nullable=True)  # {addon_id: units}

    order_id = Column(String, nullable=True, unique=True, index=True)
    payment_id = Column(String, nullable=True)
    subscription_id = Column(Integer, nullable=True, index=True)
    failure_reason = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
