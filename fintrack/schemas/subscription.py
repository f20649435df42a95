"""
Pydantic schemas for subscription and scheduler endpoints.
"""
from typing import Dict, Optional
from pydantic import BaseModel, Field


class SubscriptionStateResponse(BaseModel):
    """Entitlement snapshot, keyed the way the web and mobile clients read it."""
    status: str = Field(..., description="TRIALING, ACTIVE, PAST_DUE, CANCELED or EXPIRED")
    isActive: bool
    canAccessApp: bool
    trialEndsAt: Optional[str] = None
    currentPeriodEnd: Optional[str] = None
    daysRemaining: Optional[int] = None
    paymentCustomerId: Optional[str] = None
    paymentSubscriptionId: Optional[str] = None


class PricingResponse(BaseModel):
    monthlyPriceCents: int
    trialDays: int
    currency: str


class CheckoutSettingsResponse(BaseModel):
    """Null in SubscriptionResponse when payments are not configured."""
    priceId: str
    customData: Dict[str, str]
    customerEmail: str


class SubscriptionResponse(BaseModel):
    subscription: SubscriptionStateResponse
    pricing: PricingResponse
    checkout: Optional[CheckoutSettingsResponse] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "subscription": {
                    "status": "TRIALING",
                    "isActive": True,
                    "canAccessApp": True,
                    "trialEndsAt": "2026-03-01T12:00:00",
                    "currentPeriodEnd": None,
                    "daysRemaining": 9,
                    "paymentCustomerId": None,
                    "paymentSubscriptionId": None,
                },
                "pricing": {"monthlyPriceCents": 500, "trialDays": 14, "currency": "USD"},
                "checkout": {
                    "priceId": "price_123",
                    "customData": {"user_id": "42"},
                    "customerEmail": "user@example.com",
                },
            }
        }
    }


class CheckoutSessionResponse(BaseModel):
    url: str
    sessionId: str


class PortalSessionResponse(BaseModel):
    url: str


class ExpirySweepResponse(BaseModel):
    success: bool
    expiredCount: int
    timestamp: str
