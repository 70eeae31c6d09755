"""Referral endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from campusmarket.api.deps import get_current_user
from campusmarket.core.database import get_db
from campusmarket.models.profile import Profile
from campusmarket.schemas.referral import ReferralApplyRequest, ReferralCodeResponse, ReferralResponse
from campusmarket.services.referral import ReferralEngine

router = APIRouter(prefix="/referrals", tags=["Referrals"])


@router.get("/me", response_model=ReferralCodeResponse)
def get_my_referral_code(user: Profile = Depends(get_current_user)):
    """The caller's own code to share, and who referred them."""
    return ReferralCodeResponse(
        user_id=user.id,
        referral_code=user.referral_code,
        referred_by=user.referred_by,
    )


@router.post("/apply", response_model=ReferralResponse, status_code=201)
def apply_referral_code(
    request: ReferralApplyRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Link the caller to a referrer. Credit is paid when their first purchase completes."""
    return ReferralEngine(db).apply_referral_code(user.id, request.code)
