"""Pydantic schemas for wallets and withdrawals."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class WalletResponse(BaseModel):
    user_id: str
    available_balance: Decimal = Field(..., description="Withdrawable funds")
    escrow_balance: Decimal = Field(..., description="Proceeds held pending delivery confirmation")
    total_earned: Decimal
    total_fees_paid: Decimal

    model_config = {"from_attributes": True}


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount to withdraw in whole KES")
    phone_number: str = Field(..., description="M-Pesa number to pay out to")


class WithdrawalDecisionRequest(BaseModel):
    mpesa_transaction_id: Optional[str] = Field(None, description="Payout receipt, when approving")
    notes: Optional[str] = Field(None, description="Admin notes shown to the user")


class WithdrawalResponse(BaseModel):
    id: str
    user_id: str
    amount: Decimal
    phone_number: str
    status: str
    mpesa_transaction_id: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WithdrawalListResponse(BaseModel):
    withdrawals: list[WithdrawalResponse]
    total: int
