"""
Billing endpoints: catalog, quotes, coupons, purchases and verification.
"""
import logging
from dataclasses import asdict
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj, get_db
from app.core.catalog import FREE_TRIAL_PLAN_ID, list_addons, list_plans
from app.core.config import CURRENCY
from app.core.exceptions import ValidationError
from app.core.logging_config import sanitize_log_data
from app.db.models.user import User
from app.schemas.billing import (
    AddOnOut,
    CancelPurchaseResponse,
    CatalogResponse,
    CouponPreviewRequest,
    CouponPreviewResponse,
    FreeTrialResponse,
    OrderResponse,
    PlanOut,
    PurchaseRequest,
    PurchaseResponse,
    QuoteResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from app.services import coupon_service, entitlement_service
from app.services.payment_gateway import VerificationCallback
from app.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_orchestrator() -> PaymentOrchestrator:
    """Orchestrator dependency; the gateway is resolved from PAYMENT_GATEWAY on first use."""
    return PaymentOrchestrator(currency=CURRENCY)


@router.get("/catalog", response_model=CatalogResponse)
def get_catalog():
    """List every plan and add-on with prices in paise."""
    plans = [
        PlanOut(
            id=plan.id,
            name=plan.name,
            price=plan.price,
            validity_days=plan.validity.days,
            tag=plan.tag,
            entitlements={kind.value: total for kind, total in plan.entitlements.items()},
        )
        for plan in list_plans()
    ]
    addons = [
        AddOnOut(id=a.id, name=a.name, price=a.price, kind=a.kind.value, quantity=a.quantity)
        for a in list_addons()
    ]
    return CatalogResponse(currency=CURRENCY, plans=plans, addons=addons)


@router.post("/quote", response_model=QuoteResponse)
def quote_purchase(
    request: PurchaseRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """Price a selection without reserving anything."""
    quote = orchestrator.quote(
        db, user.id, request.plan_id, request.addons, request.coupon_code, request.use_wallet
    )
    return QuoteResponse(**asdict(quote))


@router.post("/coupons/preview", response_model=CouponPreviewResponse)
def preview_coupon(
    request: CouponPreviewRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Check a coupon against a plan without claiming a use."""
    result = coupon_service.preview(db, request.plan_id, request.coupon_code, user.id)
    return CouponPreviewResponse(**asdict(result))


@router.post("/purchases", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
def create_purchase(
    request: PurchaseRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """
    Start a purchase.

    A zero grand total is activated immediately (free_activated). Otherwise a
    gateway order is returned for checkout; if the gateway was slow the
    status is awaiting_order and the client retries /checkout.
    """
    result = orchestrator.start_purchase(
        db, user.id, request.plan_id, request.addons, request.coupon_code, request.use_wallet
    )
    return PurchaseResponse(
        transaction_id=result.transaction_id,
        status=result.status,
        quote=QuoteResponse(**asdict(result.quote)),
        order=OrderResponse(**asdict(result.order)) if result.order else None,
        subscription_id=result.subscription_id,
    )


@router.post("/purchases/{transaction_id}/checkout", response_model=OrderResponse)
def checkout_purchase(
    transaction_id: int,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """Open (or return the existing) gateway order for a pending purchase."""
    order = orchestrator.create_order(db, transaction_id, user_id=user.id)
    return OrderResponse(**asdict(order))


@router.post("/purchases/{transaction_id}/cancel", response_model=CancelPurchaseResponse)
def cancel_purchase(
    transaction_id: int,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    cancelled = orchestrator.cancel_purchase(db, user.id, transaction_id)
    return CancelPurchaseResponse(transaction_id=transaction_id, cancelled=cancelled)


@router.post("/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    request: VerifyPaymentRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """
    Verify a checkout callback and activate the purchase.

    Razorpay-style gateways only. Stripe confirms payments through the
    signed /billing/webhook, so under Stripe this returns 400 webhook_only.

    Safe to call more than once for the same order.
    """
    logger.info(f"Verify callback received: user_id={user.id}, {sanitize_log_data(request.model_dump())}")
    if not orchestrator.gateway.client_callbacks:
        raise ValidationError("webhook_only", f"{orchestrator.gateway.name} payments are confirmed via /billing/webhook")
    callback = VerificationCallback(
        order_id=request.order_id,
        payment_id=request.payment_id,
        signature=request.signature,
        transaction_id=request.transaction_id,
    )
    result = orchestrator.verify_payment(db, callback)
    logger.info(f"Verify request: user_id={user.id}, transaction_id={result.transaction_id}, status={result.status}")
    return VerifyPaymentResponse(**asdict(result))


@router.post("/free-trial", response_model=FreeTrialResponse, status_code=status.HTTP_201_CREATED)
def start_free_trial(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Activate the trial plan. Allowed once per account."""
    result = entitlement_service.activate_free_trial(db, user.id)
    return FreeTrialResponse(status="activated", plan_id=FREE_TRIAL_PLAN_ID, subscription_id=result.subscription_id)
