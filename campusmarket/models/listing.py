"""Listing model: an item or service a seller offers on the marketplace."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Numeric, Enum, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base
from campusmarket.models.enums import ListingType, enum_values


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    listing_type: Mapped[ListingType] = mapped_column(
        Enum(ListingType, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    seller_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("profiles.id"),
        nullable=False,
        index=True,
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<Listing(id={self.id}, type={self.listing_type.value}, title={self.title})>"
