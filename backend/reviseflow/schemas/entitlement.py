"""
Pydantic schemas for entitlement and quota read endpoints.
"""
from pydantic import BaseModel
from typing import Optional, Union


class EntitlementResponse(BaseModel):
    """Schema for the caller's entitlement."""
    user_id: str
    tier: str
    role: str
    stripe_subscription_id: Optional[str] = None
    timezone: str

    class Config:
        from_attributes = True


class QuotaResponse(BaseModel):
    """Schema for the caller's standing on one model."""
    model: str
    period: str
    period_key: Optional[str] = None
    limit: Optional[int] = None
    used: int
    remaining: Union[int, str]

    class Config:
        from_attributes = True
