from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime
from app.db.base import Base


class CouponUsage(Base):
    """Global redemption counter for capped coupons."""
    __tablename__ = "coupon_usage"

    code = Column(String, primary_key=True)
    uses = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
