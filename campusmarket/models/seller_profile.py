"""SellerProfile model: seller reputation and commercial terms."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Numeric, Float, Enum, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base
from campusmarket.models.enums import SellerTier, enum_values


class SellerProfile(Base):
    __tablename__ = "seller_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id"), unique=True, nullable=False
    )
    tier: Mapped[SellerTier] = mapped_column(
        Enum(SellerTier, native_enum=False, length=20, values_callable=enum_values),
        default=SellerTier.FREE,
        nullable=False,
    )
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        default=Decimal("10"),
        nullable=False,
        doc="Contracted commission (%) locked in when the tier was assigned"
    )
    tier_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    completed_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    in_app_completion_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    disputes_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_listings_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_active_listings: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    search_boost_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<SellerProfile(user={self.user_id}, tier={self.tier.value}, rate={self.commission_rate})>"
