"""
Admin endpoints.
Dispute resolution, withdrawal processing, seller tiers and the
reconciliation jobs. Every route requires an admin profile.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from campusmarket.api.deps import get_mpesa_client, require_admin
from campusmarket.core.database import get_db
from campusmarket.core.errors import ValidationError
from campusmarket.jobs.auto_release import expire_stale_payments, release_overdue
from campusmarket.models.enums import WithdrawalStatus
from campusmarket.models.profile import Profile
from campusmarket.schemas.payment import ReprocessResponse
from campusmarket.schemas.seller import SellerProfileResponse, SellerTierRequest
from campusmarket.schemas.transaction import DisputeResolutionRequest, TransactionResponse
from campusmarket.schemas.wallet import WithdrawalDecisionRequest, WithdrawalListResponse, WithdrawalResponse
from campusmarket.services.escrow import EscrowService
from campusmarket.services.mpesa_client import MpesaDarajaClient
from campusmarket.services.payment_gateway import PaymentGateway
from campusmarket.services.sellers import assign_tier
from campusmarket.services.withdrawals import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/transactions/{transaction_id}/resolve-dispute", response_model=TransactionResponse)
def resolve_dispute(
    transaction_id: str,
    request: DisputeResolutionRequest,
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Refund the buyer or release the seller's proceeds."""
    logger.info("Admin %s resolving dispute on %s: %s", admin.id, transaction_id, request.resolution)
    return EscrowService(db).resolve_dispute(transaction_id, request.resolution)


@router.get("/withdrawals", response_model=WithdrawalListResponse)
def list_withdrawals(
    status: Optional[str] = Query(None, description="Filter: pending/completed/rejected"),
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        status_filter = WithdrawalStatus(status) if status else None
    except ValueError:
        raise ValidationError(f"Unknown status '{status}'")
    withdrawals = WithdrawalService(db).list_withdrawals(status=status_filter)
    return WithdrawalListResponse(
        withdrawals=[WithdrawalResponse.model_validate(w) for w in withdrawals],
        total=len(withdrawals),
    )


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse)
def approve_withdrawal(
    withdrawal_id: str,
    request: WithdrawalDecisionRequest,
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return WithdrawalService(db).approve_withdrawal(
        withdrawal_id, admin.id, request.mpesa_transaction_id, request.notes
    )


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalResponse)
def reject_withdrawal(
    withdrawal_id: str,
    request: WithdrawalDecisionRequest,
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Reject and refund the withdrawal amount to the user's available balance."""
    return WithdrawalService(db).reject_withdrawal(withdrawal_id, admin.id, request.notes)


@router.put("/sellers/{user_id}/tier", response_model=SellerProfileResponse)
def set_seller_tier(
    user_id: str,
    request: SellerTierRequest,
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return assign_tier(db, user_id, request.tier, request.expires_at)


@router.post("/jobs/auto-release")
def run_auto_release(admin: Profile = Depends(require_admin), db: Session = Depends(get_db)):
    """Run the escrow sweeps now instead of waiting for the scheduler."""
    return {
        "released": release_overdue(db),
        "expired": expire_stale_payments(db),
    }


@router.post("/callbacks/reprocess", response_model=ReprocessResponse)
def reprocess_callbacks(
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
    client: MpesaDarajaClient = Depends(get_mpesa_client),
):
    """Re-apply stored successful M-Pesa callbacks that never reached the ledger."""
    return ReprocessResponse(reprocessed=PaymentGateway(db, client=client).reprocess_unprocessed_callbacks())
