"""
Script to mark subscriptions past their end date as expired.
Run: python -m scripts.expire_subscriptions

Safe to schedule from cron on several hosts at once.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db.session import SessionLocal
from app.services.usage_service import expire_subscriptions
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run() -> int:
    db = SessionLocal()
    try:
        expired = expire_subscriptions(db)
        logger.info(f"Expiry sweep finished: {expired} subscription(s) expired")
        return expired
    except Exception:
        db.rollback()
        logger.error("Expiry sweep failed", exc_info=True)
        raise
    finally:
        db.close()


if __name__ == "__main__":
    run()
