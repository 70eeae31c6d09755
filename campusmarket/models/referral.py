"""Referral model: one referrer -> referred relationship, credited once."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Enum, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base
from campusmarket.models.enums import ReferralStatus, enum_values


class Referral(Base):
    __tablename__ = "referrals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=False, index=True
    )
    referred_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("profiles.id"),
        unique=True,
        nullable=False,
        doc="A user can be referred by exactly one other user"
    )
    status: Mapped[ReferralStatus] = mapped_column(
        Enum(ReferralStatus, native_enum=False, length=20, values_callable=enum_values),
        default=ReferralStatus.PENDING,
        nullable=False,
    )
    credit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<Referral(referrer={self.referrer_id}, referred={self.referred_id}, status={self.status.value})>"
