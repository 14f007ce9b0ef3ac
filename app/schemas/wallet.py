"""
Pydantic schemas for wallet endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class WalletTransactionOut(BaseModel):
    id: int
    amount: int = Field(..., description="Signed paise; positive is a credit")
    type: str
    status: str
    transaction_ref: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    balance: int = Field(..., description="Sum of completed transactions in paise")
    available: int = Field(..., description="Balance less pending holds")
    transactions: List[WalletTransactionOut]
