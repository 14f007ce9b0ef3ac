"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from app.db.models.user import User
from app.db.models.payment_transaction import PaymentTransaction
from app.db.models.subscription import Subscription, USAGE_COLUMNS
from app.db.models.addon_credit import AddonCredit
from app.db.models.wallet_transaction import WalletTransaction
from app.db.models.coupon_usage import CouponUsage
from app.db.models.pending_activation import PendingActivation

# Explicitly export all models for clarity
__all__ = [
    "User",
    "PaymentTransaction",
    "Subscription",
    "USAGE_COLUMNS",
    "AddonCredit",
    "WalletTransaction",
    "CouponUsage",
    "PendingActivation",
]
