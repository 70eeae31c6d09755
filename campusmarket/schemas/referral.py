"""Pydantic schemas for referral codes."""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class ReferralApplyRequest(BaseModel):
    code: str = Field(..., description="Referral code of the inviting user (case-insensitive)")


class ReferralResponse(BaseModel):
    id: str
    referrer_id: str
    referred_id: str
    status: str
    credit_amount: Decimal = Field(..., description="Credit paid to the referrer on the first completed purchase")

    model_config = {"from_attributes": True}


class ReferralCodeResponse(BaseModel):
    user_id: str
    referral_code: str
    referred_by: Optional[str] = None
