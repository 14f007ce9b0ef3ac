"""
Wallet ledger service.

The balance is never stored: it is the sum of completed wallet transactions.
A purchase places a pending hold with reserve() and finalises it once the
payment outcome is known: settle on success, release on failure.
Corrections are new offsetting rows, never edits to an amount.
"""
import logging
from typing import Dict, List, Optional
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.exceptions import ValidationError
from app.db.models.user import User
from app.db.models.wallet_transaction import WalletTransaction

logger = logging.getLogger(__name__)

WALLET_STATUSES = ("pending", "completed", "failed")
WALLET_TYPES = ("credit", "purchase_use", "refund")


def get_balance(db: Session, user_id: int) -> int:
    """Sum of completed wallet transactions for a user, in paise."""
    total = db.query(
        func.coalesce(func.sum(WalletTransaction.amount), 0)
    ).filter(
        WalletTransaction.user_id == user_id,
        WalletTransaction.status == "completed",
    ).scalar()
    return int(total)


def get_available_balance(db: Session, user_id: int) -> int:
    """Completed balance less any outstanding holds."""
    held = db.query(
        func.coalesce(func.sum(WalletTransaction.amount), 0)
    ).filter(
        WalletTransaction.user_id == user_id,
        WalletTransaction.status == "pending",
        WalletTransaction.amount < 0,
    ).scalar()
    return max(0, get_balance(db, user_id) + int(held))


def _lock_wallet(db: Session, user_id: int) -> None:
    # Writing the user row takes a row lock on Postgres and the write lock on
    # SQLite, so concurrent holds for one user are serialised.
    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values(wallet_lock_version=User.wallet_lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError("unknown_user", f"User {user_id} does not exist")


def reserve(
    db: Session,
    user_id: int,
    amount: int,
    payment_transaction_id: Optional[int] = None
) -> int:
    """
    Place a hold of up to `amount` paise on the user's wallet.

    Clamps to the available balance instead of erroring, so the result is
    always min(amount, available) and never negative. Runs in the caller's
    transaction; nothing is committed here.

    Returns:
        Amount actually reserved, in paise
    """
    if amount <= 0:
        return 0

    _lock_wallet(db, user_id)
    available = get_available_balance(db, user_id)
    reserved = min(amount, available)
    if reserved <= 0:
        return 0

    hold = WalletTransaction(
        user_id=user_id,
        amount=-reserved,
        type="purchase_use",
        status="pending",
        transaction_ref=f"hold_{payment_transaction_id}" if payment_transaction_id else None,
        payment_transaction_id=payment_transaction_id,
    )
    db.add(hold)
    db.flush()

    logger.info(
        f"Wallet hold placed: user_id={user_id}, requested={amount}, reserved={reserved}, "
        f"available={available}, payment_transaction_id={payment_transaction_id}"
    )
    return reserved


def _finalise_holds(db: Session, payment_transaction_id: int, status: str) -> int:
    result = db.execute(
        update(WalletTransaction)
        .where(
            WalletTransaction.payment_transaction_id == payment_transaction_id,
            WalletTransaction.status == "pending",
        )
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def settle_reservation(db: Session, payment_transaction_id: int) -> int:
    """Turn the purchase's hold into a completed debit. Returns rows settled."""
    settled = _finalise_holds(db, payment_transaction_id, "completed")
    if settled:
        logger.info(f"Wallet hold settled: payment_transaction_id={payment_transaction_id}")
    return settled


def release_reservation(db: Session, payment_transaction_id: int) -> int:
    """Drop the purchase's hold without debiting. Returns rows released."""
    released = _finalise_holds(db, payment_transaction_id, "failed")
    if released:
        logger.info(f"Wallet hold released: payment_transaction_id={payment_transaction_id}")
    return released


def record(
    db: Session,
    user_id: int,
    amount: int,
    status: str = "completed",
    ref: Optional[str] = None,
    type: Optional[str] = None,
    payment_transaction_id: Optional[int] = None,
    details: Optional[Dict] = None
) -> WalletTransaction:
    """
    Append a wallet transaction.

    Args:
        amount: Signed paise; positive credits the wallet, negative debits it
        status: pending, completed or failed
        ref: Free-form reference to the originating purchase or grant
        type: credit, purchase_use or refund; inferred from the sign if omitted
    """
    if amount == 0:
        raise ValidationError("invalid_amount", "Wallet transactions must have a non-zero amount")
    if status not in WALLET_STATUSES:
        raise ValidationError("invalid_status", f"Unknown wallet status: {status}")
    if type is None:
        type = "credit" if amount > 0 else "purchase_use"
    if type not in WALLET_TYPES:
        raise ValidationError("invalid_type", f"Unknown wallet transaction type: {type}")

    entry = WalletTransaction(
        user_id=user_id,
        amount=amount,
        type=type,
        status=status,
        transaction_ref=ref,
        payment_transaction_id=payment_transaction_id,
        details=details,
    )
    db.add(entry)
    db.flush()

    logger.info(f"Wallet transaction recorded: user_id={user_id}, amount={amount}, type={type}, status={status}, ref={ref}")
    return entry


def list_transactions(db: Session, user_id: int, limit: int = 50) -> List[WalletTransaction]:
    return (
        db.query(WalletTransaction)
        .filter(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(limit)
        .all()
    )
