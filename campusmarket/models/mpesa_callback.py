"""
Append-only audit log of raw M-Pesa STK callbacks.
A row is written before the callback is applied; `processed` flips once the
ledger has absorbed it, so unprocessed rows are the reconciliation queue.
Rows that failed the callback token check are kept with verified=False and
are never applied, not even by reconciliation. Bodies that could not be
parsed are kept with no correlation id.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import String, Boolean, DateTime, Integer, Numeric, JSON, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base


class MpesaCallback(Base):
    __tablename__ = "mpesa_callbacks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transaction_date: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    raw_callback: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    verified: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, doc="Arrived on the secret callback URL from an allowed source"
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<MpesaCallback(checkout={self.checkout_request_id}, "
            f"result={self.result_code}, verified={self.verified}, processed={self.processed})>"
        )
