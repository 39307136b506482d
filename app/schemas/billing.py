"""
Schemas for the billing endpoints.

Request and response bodies use camelCase on the wire; Python attributes stay
snake_case through field aliases.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class OrganizationRequest(BaseModel):
    """Body for endpoints that only target an organization."""
    organization_id: str = Field(..., alias="organizationId", min_length=1, description="Organization ID")

    class Config:
        populate_by_name = True


class CheckoutRequest(BaseModel):
    """Body for POST /billing/checkout"""
    price_id: str = Field(..., alias="priceId", min_length=1, description="Stripe Price ID")
    organization_id: str = Field(..., alias="organizationId", min_length=1, description="Organization ID")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "priceId": "price_1PqPro",
                "organizationId": "6f1c9a6e-2d3b-4b7e-9a51-0c2f1e8d7a44",
            }
        }


class LimitCheckRequest(BaseModel):
    """Body for POST /billing/limits/check"""
    organization_id: str = Field(..., alias="organizationId", min_length=1)
    limit_key: str = Field(..., alias="limitKey", description="e.g. maxCustomers")
    current_count: int = Field(..., alias="currentCount", ge=0)

    class Config:
        populate_by_name = True


class CheckoutResponse(BaseModel):
    type: str
    session_id: Optional[str] = Field(None, alias="sessionId")
    url: Optional[str] = None
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    message: Optional[str] = None
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")

    class Config:
        populate_by_name = True


class SubscriptionInfoResponse(BaseModel):
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(False, alias="cancelAtPeriodEnd")
    status: str
    plan: str
    interval: Optional[str] = None
    price_id: Optional[str] = Field(None, alias="priceId")

    class Config:
        populate_by_name = True


class PortalResponse(BaseModel):
    url: str


class ConfigResponse(BaseModel):
    publishable_key: Optional[str] = Field(None, alias="publishableKey")
    stripe_configured: bool = Field(False, alias="stripeConfigured")

    class Config:
        populate_by_name = True


class PlanPriceResponse(BaseModel):
    id: str
    currency: str
    interval: str
    unit_amount: int = Field(..., alias="unitAmount")

    class Config:
        populate_by_name = True


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str
    features: Dict[str, bool]
    limits: Dict[str, int]
    prices: List[PlanPriceResponse]
    trial_days: int = Field(0, alias="trialDays")
    highlight: bool = False

    class Config:
        populate_by_name = True


class PlansResponse(BaseModel):
    plans: List[PlanResponse]
    stripe_configured: bool = Field(False, alias="stripeConfigured")

    class Config:
        populate_by_name = True


class EntitlementsResponse(BaseModel):
    plan: str
    status: str
    is_trialing: bool = Field(False, alias="isTrialing")
    trial_ends_at: Optional[datetime] = Field(None, alias="trialEndsAt")
    features: Dict[str, bool]
    limits: Dict[str, int]

    class Config:
        populate_by_name = True


class LimitCheckResponse(BaseModel):
    allowed: bool
    current_count: int = Field(..., alias="currentCount")
    limit: int = Field(..., description="-1 means unlimited")
    remaining: Optional[int] = Field(None, description="null when unlimited")
    is_unlimited: bool = Field(False, alias="isUnlimited")
    usage_percentage: int = Field(0, alias="usagePercentage")

    class Config:
        populate_by_name = True
