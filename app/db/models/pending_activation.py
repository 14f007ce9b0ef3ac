from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from app.db.base import Base


class PendingActivation(Base):
    """
    Outbox row for a payment that succeeded but whose entitlements were not
    granted. Drained by retry_pending_activations().
    """
    __tablename__ = "pending_activations"

    id = Column(Integer, primary_key=True, index=True)
    payment_transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=False, unique=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending | done | manual_review
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
