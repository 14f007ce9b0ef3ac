"""
Pydantic schemas for usage endpoints.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class FeatureUsageDetail(BaseModel):
    """Usage details for a single entitlement kind."""
    kind: str = Field(..., description="Entitlement kind (optimization, score_check, linkedin_message, guided_build)")
    used: int = Field(..., description="Units consumed from the subscription pool")
    total: Optional[int] = Field(None, description="Subscription pool size (None for unlimited)")
    remaining: Optional[int] = Field(None, description="Remaining subscription units (None for unlimited)")
    unlimited: bool = Field(..., description="Whether the subscription pool is unlimited")
    addon_remaining: int = Field(0, description="Remaining add-on credits of this kind")

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "optimization",
                "used": 4,
                "total": 30,
                "remaining": 26,
                "unlimited": False,
                "addon_remaining": 1
            }
        }


class UsageResponse(BaseModel):
    """Response schema for GET /me/usage."""
    plan_id: Optional[str] = Field(None, description="Active plan id, or None without a subscription")
    plan_name: Optional[str] = None
    subscription_id: Optional[int] = None
    end_date: Optional[datetime] = None
    features: List[FeatureUsageDetail] = Field(..., description="Per-kind usage details")


class ConsumeResponse(BaseModel):
    """Response schema for POST /me/usage/{kind}/consume."""
    status: str
    kind: str
    remaining: Optional[int] = Field(None, description="Units left in the pool drawn from (None for unlimited)")
    source: Optional[str] = Field(None, description="subscription or addon")


class ExhaustedResponse(BaseModel):
    """Error response schema for an exhausted entitlement."""
    error: str = Field("entitlement_exhausted", description="Error code")
    kind: str = Field(..., description="Entitlement kind that ran out")
    plan: Optional[str] = Field(None, description="User's active plan")
    message: str = Field(..., description="Human-readable error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "entitlement_exhausted",
                "kind": "optimization",
                "plan": "smart_apply_pack",
                "message": "No optimization credits remaining. Buy an add-on or upgrade your plan."
            }
        }
