"""
Script to credit a user's wallet (support goodwill, refunds to wallet).
Run: python -m scripts.grant_wallet_credit user@example.com 500 --ref support_ticket_123

The amount is in rupees; the ledger stores paise.
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.catalog import PAISE_PER_RUPEE
from app.db.session import SessionLocal
from app.db.models.user import User
from app.services import wallet_service
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def grant_credit(email: str, rupees: int, ref: str = None, refund: bool = False) -> bool:
    """Append a completed credit to the user's wallet."""
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email.lower()).first()
        if not user:
            logger.error(f"User {email} not found")
            return False

        wallet_service.record(
            db,
            user.id,
            rupees * PAISE_PER_RUPEE,
            status="completed",
            ref=ref or "manual_credit",
            type="refund" if refund else "credit",
            details={"source": "scripts.grant_wallet_credit"},
        )
        db.commit()
        logger.info(f"Credited {rupees} INR to {email}; balance is now {wallet_service.get_balance(db, user.id)} paise")
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Error crediting wallet: {e}", exc_info=True)
        return False
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Credit a user's wallet")
    parser.add_argument("email")
    parser.add_argument("rupees", type=int)
    parser.add_argument("--ref", default=None)
    parser.add_argument("--refund", action="store_true")
    args = parser.parse_args()

    if args.rupees <= 0:
        print("[ERROR] Amount must be positive")
        sys.exit(1)

    if grant_credit(args.email, args.rupees, args.ref, args.refund):
        print(f"\n[SUCCESS] Credited {args.rupees} INR to {args.email}")
    else:
        print(f"\n[ERROR] Failed to credit {args.email}")
        sys.exit(1)
