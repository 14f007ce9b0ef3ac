"""
Pydantic schemas for billing endpoints.

All amounts are integer paise.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class PlanOut(BaseModel):
    id: str
    name: str
    price: int = Field(..., description="Price in paise")
    validity_days: int
    tag: str = ""
    entitlements: Dict[str, Optional[int]] = Field(..., description="Total per entitlement kind; null is unlimited")


class AddOnOut(BaseModel):
    id: str
    name: str
    price: int = Field(..., description="Price in paise per unit")
    kind: str
    quantity: int = Field(..., description="Credits granted per unit")


class CatalogResponse(BaseModel):
    currency: str
    plans: List[PlanOut]
    addons: List[AddOnOut]


class PurchaseRequest(BaseModel):
    """Selection for a quote or a purchase. Omit plan_id for add-on only checkouts."""
    plan_id: Optional[str] = None
    addons: Dict[str, int] = Field(default_factory=dict, description="{addon_id: units}")
    coupon_code: Optional[str] = None
    use_wallet: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "plan_id": "career_boost_plus",
                "addons": {"linkedin_messages_50": 1},
                "coupon_code": None,
                "use_wallet": True
            }
        }


class QuoteResponse(BaseModel):
    plan_id: Optional[str] = None
    plan_price: int
    discount: int
    wallet_deduction: int
    addons_total: int
    grand_total: int
    currency: str
    coupon_code: Optional[str] = None
    coupon_applied: bool = False
    coupon_reason: Optional[str] = None


class CouponPreviewRequest(BaseModel):
    plan_id: str
    coupon_code: str


class CouponPreviewResponse(BaseModel):
    applied: bool
    code: Optional[str] = None
    discount: int = 0
    final_amount: int = 0
    reason: Optional[str] = Field(None, description="invalid_code, not_applicable or usage_limit_reached")


class OrderResponse(BaseModel):
    transaction_id: int
    order_id: str
    amount: int
    currency: str
    gateway: str
    key_id: Optional[str] = None
    client_secret: Optional[str] = None


class PurchaseResponse(BaseModel):
    transaction_id: int
    status: str = Field(..., description="pending, awaiting_order, free_activated or activation_queued")
    quote: QuoteResponse
    order: Optional[OrderResponse] = None
    subscription_id: Optional[int] = None


class VerifyPaymentRequest(BaseModel):
    """Checkout callback forwarded by the client."""
    order_id: str
    payment_id: Optional[str] = None
    signature: str
    transaction_id: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "order_id": "order_Nx1a2b3c4d",
                "payment_id": "pay_Nx9z8y7w6v",
                "signature": "6f1c...e2",
                "transaction_id": 42
            }
        }


class VerifyPaymentResponse(BaseModel):
    status: str = Field(..., description="activated, already_processed or activation_queued")
    transaction_id: int
    subscription_id: Optional[int] = None


class CancelPurchaseResponse(BaseModel):
    transaction_id: int
    cancelled: bool


class FreeTrialResponse(BaseModel):
    status: str
    plan_id: str
    subscription_id: Optional[int] = None
