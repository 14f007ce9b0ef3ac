"""
Usage endpoints.

Reports entitlement state for the authenticated user and meters
consumption of one unit at a time.
"""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj, get_db
from app.core.catalog import EntitlementKind
from app.core.exceptions import ExhaustionError, ValidationError
from app.db.models.user import User
from app.schemas.usage import ConsumeResponse, UsageResponse
from app.services.usage_service import consume, get_active_subscription, get_usage_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["Usage"])


@router.get("/usage", response_model=UsageResponse, status_code=status.HTTP_200_OK)
def get_usage(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """
    Get entitlement usage for the authenticated user.

    Returns:
    - plan_id / plan_name: Active plan, or null without one
    - features: per kind used, total, remaining, unlimited and addon_remaining

    Requires authentication via Bearer token.
    """
    usage_data = get_usage_summary(db, user.id)
    logger.debug(f"Usage summary requested: user_id={user.id}, plan={usage_data['plan_id']}")
    return usage_data


@router.post("/usage/{kind}/consume", response_model=ConsumeResponse)
def consume_entitlement(
    kind: EntitlementKind,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """
    Consume one unit of an entitlement.

    429 with error=entitlement_exhausted when both the subscription pool
    and add-on credits are empty.
    """
    result = consume(db, user.id, kind)
    if result.status == "no_subscription":
        raise ValidationError("no_subscription", "No active subscription or add-on credits")
    if result.status == "exhausted":
        active = get_active_subscription(db, user.id)
        raise ExhaustionError(kind.value, active.plan_id if active else None)

    return ConsumeResponse(
        status=result.status,
        kind=result.kind.value,
        remaining=result.remaining,
        source=result.source,
    )
