"""
ChargeAttempt model: one row per STK push sent for a transaction.
A buyer may retry a charge, so a transaction can own several checkout ids;
a late callback for any of them still resolves to its transaction.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Enum, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base
from campusmarket.models.enums import ChargeStatus, enum_values


class ChargeAttempt(Base):
    __tablename__ = "charge_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transactions.id"), nullable=False, index=True
    )
    checkout_request_id: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, doc="Safaricom CheckoutRequestID (correlation id)"
    )
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[ChargeStatus] = mapped_column(
        Enum(ChargeStatus, native_enum=False, length=20, values_callable=enum_values),
        default=ChargeStatus.PENDING,
        nullable=False,
    )
    result_desc: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<ChargeAttempt(txn={self.transaction_id}, checkout={self.checkout_request_id}, status={self.status.value})>"
