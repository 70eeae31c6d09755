"""
Escrow transaction endpoints.
Checkout, payment initiation, delivery confirmation, disputes and ratings.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from campusmarket.api.deps import get_current_user, get_mpesa_client
from campusmarket.core.database import get_db
from campusmarket.core.errors import ValidationError
from campusmarket.models.enums import TransactionStatus
from campusmarket.models.profile import Profile
from campusmarket.models.transaction import Transaction
from campusmarket.schemas.payment import ChargeRequest, ChargeResponse
from campusmarket.schemas.transaction import (
    DeliveryConfirmationResponse,
    DisputeRequest,
    RatingRequest,
    ReviewResponse,
    TransactionCreateRequest,
    TransactionListResponse,
    TransactionResponse,
)
from campusmarket.services.escrow import EscrowService
from campusmarket.services.mpesa_client import MpesaDarajaClient
from campusmarket.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/transactions", tags=["Transactions"])


@router.post("", response_model=TransactionResponse, status_code=201)
def create_transaction(
    request: TransactionCreateRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Open a checkout in pending_payment with the commission split fixed."""
    return EscrowService(db).create_transaction(
        buyer_id=user.id,
        seller_id=request.seller_id,
        listing_id=request.listing_id,
        listing_type=request.listing_type,
        gross_amount=request.amount,
    )


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    status: Optional[str] = Query(None, description="Filter: lifecycle status"),
    limit: int = Query(50, ge=1, le=200, description="Max results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Transactions where the caller is buyer or seller, newest first."""
    stmt = select(Transaction).where(or_(Transaction.buyer_id == user.id, Transaction.seller_id == user.id))
    if status:
        try:
            stmt = stmt.where(Transaction.status == TransactionStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'")

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    transactions = db.scalars(
        stmt.order_by(Transaction.created_at.desc()).offset(offset).limit(limit)
    ).all()

    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
        user_id=user.id,
    )


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction_status(
    transaction_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Current status for either party; clients poll this after an STK push."""
    return EscrowService(db).get_transaction_status(transaction_id, user.id)


@router.post("/{transaction_id}/charge", response_model=ChargeResponse)
def initiate_charge(
    transaction_id: str,
    request: ChargeRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: MpesaDarajaClient = Depends(get_mpesa_client),
):
    """Send an M-Pesa STK push to the buyer's phone."""
    result = PaymentGateway(db, client=client).initiate_charge(
        transaction_id, user.id, request.phone_number, request.amount
    )
    return ChargeResponse(
        transaction_id=result.transaction_id,
        checkout_request_id=result.checkout_request_id,
        merchant_request_id=result.merchant_request_id,
        message=result.message,
    )


@router.post("/{transaction_id}/confirm-delivery", response_model=DeliveryConfirmationResponse)
def confirm_delivery(
    transaction_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Seller marks delivered or buyer confirms receipt; both together release escrow."""
    service = EscrowService(db)
    outcome = service.confirm_delivery(transaction_id, user.id)
    txn = service.get_transaction_status(transaction_id, user.id)
    return DeliveryConfirmationResponse(
        completed=outcome.completed,
        status=outcome.status.value,
        transaction=TransactionResponse.model_validate(txn),
    )


@router.post("/{transaction_id}/dispute", response_model=TransactionResponse)
def raise_dispute(
    transaction_id: str,
    request: DisputeRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return EscrowService(db).raise_dispute(transaction_id, user.id, request.reason)


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
def cancel_transaction(
    transaction_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return EscrowService(db).cancel_transaction(transaction_id, user.id)


@router.post("/{transaction_id}/rate", response_model=ReviewResponse, status_code=201)
def rate_transaction(
    transaction_id: str,
    request: RatingRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return EscrowService(db).rate_transaction(transaction_id, user.id, request.rating, request.comment)
