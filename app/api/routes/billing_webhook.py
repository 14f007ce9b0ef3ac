import logging
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from app.api.routes.billing import get_orchestrator
from app.core.auth_dependency import get_db
from app.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing Webhook"])


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """
    Gateway webhook. The signature is checked before anything is read;
    a bad signature is a 400 so the gateway does not keep redelivering.
    """
    payload = await request.body()
    outcome = orchestrator.handle_webhook(db, payload, stripe_signature or "")
    logger.info(f"Webhook processed: outcome={outcome}")
    return {"status": "success", "outcome": outcome}
