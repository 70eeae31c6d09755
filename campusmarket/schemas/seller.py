"""Pydantic schemas for seller tiers."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class SellerTierRequest(BaseModel):
    tier: str = Field(..., description="Seller tier (free/premium/trusted)")
    expires_at: Optional[datetime] = Field(None, description="When the paid tier lapses back to free")


class SellerProfileResponse(BaseModel):
    user_id: str
    tier: str
    commission_rate: Decimal = Field(..., description="Contracted commission rate (%)")
    tier_expires_at: Optional[datetime] = None
    completed_orders: int
    average_rating: float
    total_ratings: int
    disputes_count: int

    model_config = {"from_attributes": True}
