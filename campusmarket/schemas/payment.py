"""Pydantic schemas for M-Pesa charge initiation."""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class ChargeRequest(BaseModel):
    phone_number: str = Field(..., description="Payer's M-Pesa number, e.g. 0712345678")
    amount: Optional[Decimal] = Field(None, description="Must equal the transaction amount when given")


class ChargeResponse(BaseModel):
    success: bool = True
    transaction_id: str
    checkout_request_id: str = Field(..., description="Correlation id for the asynchronous callback")
    merchant_request_id: Optional[str] = None
    message: str


class ReprocessResponse(BaseModel):
    reprocessed: int = Field(..., description="Stored callbacks newly applied to the ledger")
