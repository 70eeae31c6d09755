"""
Wallet model, one per user.
Balances only move through atomic SQL increments issued by the ledger store.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base

BALANCE_FIELDS = ("available_balance", "escrow_balance", "total_earned", "total_fees_paid")


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = tuple(
        CheckConstraint(f"{field} >= 0", name=f"ck_wallet_{field}_non_negative")
        for field in BALANCE_FIELDS
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("profiles.id"),
        unique=True,
        nullable=False,
    )
    available_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False,
        doc="Withdrawable funds"
    )
    escrow_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False,
        doc="Gross proceeds held pending delivery confirmation"
    )
    total_earned: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_fees_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Wallet(user={self.user_id}, available={self.available_balance}, "
            f"escrow={self.escrow_balance})>"
        )
