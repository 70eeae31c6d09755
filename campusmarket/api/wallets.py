"""Wallet balance and withdrawal request endpoints."""

from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from campusmarket.api.deps import get_current_user
from campusmarket.core.database import get_db
from campusmarket.models.profile import Profile
from campusmarket.models.wallet import Wallet
from campusmarket.schemas.wallet import (
    WalletResponse,
    WithdrawalCreateRequest,
    WithdrawalListResponse,
    WithdrawalResponse,
)
from campusmarket.services.withdrawals import WithdrawalService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("", response_model=WalletResponse)
def get_wallet(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    """Caller's balances. Users who never sold or bought see zeros."""
    wallet = db.scalars(select(Wallet).where(Wallet.user_id == user.id)).first()
    if wallet is None:
        zero = Decimal("0")
        return WalletResponse(
            user_id=user.id,
            available_balance=zero,
            escrow_balance=zero,
            total_earned=zero,
            total_fees_paid=zero,
        )
    return wallet


@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=201)
def request_withdrawal(
    request: WithdrawalCreateRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Request a payout; the amount leaves the available balance immediately."""
    return WithdrawalService(db).request_withdrawal(user.id, request.amount, request.phone_number)


@router.get("/withdrawals", response_model=WithdrawalListResponse)
def list_my_withdrawals(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    withdrawals = WithdrawalService(db).list_withdrawals(user_id=user.id)
    return WithdrawalListResponse(
        withdrawals=[WithdrawalResponse.model_validate(w) for w in withdrawals],
        total=len(withdrawals),
    )
