import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj, get_db
from app.db.models.user import User
from app.schemas.wallet import WalletResponse, WalletTransactionOut
from app.services import wallet_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["Wallet"])


@router.get("/wallet", response_model=WalletResponse)
def get_wallet(
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Wallet balance, available balance after holds, and recent transactions."""
    return WalletResponse(
        balance=wallet_service.get_balance(db, user.id),
        available=wallet_service.get_available_balance(db, user.id),
        transactions=[
            WalletTransactionOut.model_validate(entry)
            for entry in wallet_service.list_transactions(db, user.id, limit=limit)
        ],
    )
