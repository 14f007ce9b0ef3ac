"""
Script to settle stuck purchases and retry queued activations.
Run: python -m scripts.reconcile_payments [--older-than-minutes 15]

1. Pending purchases older than the threshold are checked against the gateway.
2. The activation outbox is drained; rows failing ACTIVATION_MAX_ATTEMPTS
   times move to manual_review.
"""
import argparse
import sys
import os
from datetime import timedelta

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import ACTIVATION_MAX_ATTEMPTS
from app.db.session import SessionLocal
from app.services.payment_orchestrator import PaymentOrchestrator
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def reconcile(older_than_minutes: int = 15, max_attempts: int = ACTIVATION_MAX_ATTEMPTS) -> dict:
    orchestrator = PaymentOrchestrator()
    db = SessionLocal()
    try:
        orders = orchestrator.reconcile_pending_orders(db, older_than=timedelta(minutes=older_than_minutes))
        activations = orchestrator.retry_pending_activations(db, max_attempts=max_attempts)
        logger.info(f"Reconciliation finished: orders={orders}, activations={activations}")
        return {"orders": orders, "activations": activations}
    except Exception:
        db.rollback()
        logger.error("Reconciliation failed", exc_info=True)
        raise
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile pending payments and queued activations")
    parser.add_argument("--older-than-minutes", type=int, default=15)
    parser.add_argument("--max-attempts", type=int, default=ACTIVATION_MAX_ATTEMPTS)
    args = parser.parse_args()

    result = reconcile(args.older_than_minutes, args.max_attempts)
    if result["activations"]["manual_review"]:
        print(f"\n[WARNING] {result['activations']['manual_review']} activation(s) need manual review")
        sys.exit(1)
