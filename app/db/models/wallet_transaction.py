from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index
from app.db.base import Base


class WalletTransaction(Base):
    """
    Append-only wallet ledger entry.

    amount is signed paise (positive = credit, negative = debit). Balance is
    the sum over completed rows. A pending row is a hold placed by reserve();
    its status is finalised once, its amount never changes.
    """
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, nullable=False, default="credit")  # credit | purchase_use | refund
    status = Column(String, nullable=False, default="completed")  # pending | completed | failed
    transaction_ref = Column(String, nullable=True)
    payment_transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True, index=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_wallet_user_status", "user_id", "status"),
    )
