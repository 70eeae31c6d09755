"""Pydantic schemas for escrow transaction requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class TransactionCreateRequest(BaseModel):
    """Checkout request; the buyer is the authenticated user."""
    seller_id: str = Field(..., description="Seller who owns the listing")
    listing_id: str = Field(..., description="Listing being purchased")
    listing_type: str = Field(..., description="Listing type (item/service)")
    amount: Decimal = Field(..., description="Gross amount in whole KES")


class TransactionResponse(BaseModel):
    """Escrow transaction as seen by either party."""
    id: str = Field(..., description="Transaction identifier")
    listing_id: str
    listing_type: str
    listing_title: str = Field(..., description="Listing title captured at checkout")
    amount: Decimal = Field(..., description="Gross amount paid by the buyer")
    commission_rate: Decimal = Field(..., description="Commission rate (%) applied")
    platform_fee: Decimal
    seller_amount: Decimal = Field(..., description="Net proceeds released to the seller")
    buyer_id: Optional[str]
    seller_id: str
    status: str = Field(..., description="Lifecycle status")
    payment_method: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    seller_confirmed_delivery: bool
    buyer_confirmed: bool
    dispute_reason: Optional[str] = None
    dispute_resolution: Optional[str] = None
    is_rated: bool
    paid_at: Optional[datetime] = None
    auto_release_at: Optional[datetime] = Field(None, description="When escrow releases without buyer confirmation")
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    user_id: str


class DeliveryConfirmationResponse(BaseModel):
    """Result of a delivery confirmation."""
    completed: bool = Field(..., description="Whether escrow was released by this confirmation")
    status: str
    transaction: TransactionResponse


class DisputeRequest(BaseModel):
    reason: str = Field(..., description="Why the transaction is disputed")


class DisputeResolutionRequest(BaseModel):
    resolution: str = Field(..., description="Outcome (refund/release)")


class RatingRequest(BaseModel):
    rating: int = Field(..., description="Seller rating from 1 to 5")
    comment: Optional[str] = Field(None, description="Optional review text")


class ReviewResponse(BaseModel):
    id: str
    transaction_id: str
    seller_id: str
    rating: int
    comment: Optional[str] = None

    model_config = {"from_attributes": True}
