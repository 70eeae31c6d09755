"""
Transaction model: one purchase of one listing, moving through the
escrow lifecycle. Rows are never deleted; they are the audit trail.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Boolean, DateTime, ForeignKey, Integer, Numeric, Enum, CheckConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base
from campusmarket.models.enums import (
    DisputeResolution,
    ListingType,
    PaymentMethod,
    TransactionStatus,
    enum_values,
)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("platform_fee + seller_amount = amount", name="ck_transaction_split"),
        CheckConstraint("buyer_id IS NULL OR buyer_id <> seller_id", name="ck_transaction_no_self_trade"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        doc="Unique transaction identifier (UUID)"
    )

    # Listing snapshot
    listing_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    listing_type: Mapped[ListingType] = mapped_column(
        Enum(ListingType, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
    )
    listing_title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Listing title captured at checkout"
    )

    # Money, fixed at creation
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, doc="Gross amount")
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        doc="Seller commission rate (%) used to compute the fee"
    )
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    seller_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Parties
    buyer_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=True, index=True
    )
    seller_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=False, index=True
    )

    # Payment
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        Enum(PaymentMethod, native_enum=False, length=20, values_callable=enum_values),
        nullable=True,
    )
    mpesa_checkout_request_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        doc="Gateway correlation id linking the async callback to this charge"
    )
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False, length=20, values_callable=enum_values),
        default=TransactionStatus.PENDING_PAYMENT,
        nullable=False,
        index=True,
    )

    # Confirmation markers
    seller_confirmed_delivery: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    buyer_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    buyer_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Dispute
    dispute_reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    dispute_resolution: Mapped[Optional[DisputeResolution]] = mapped_column(
        Enum(DisputeResolution, native_enum=False, length=20, values_callable=enum_values),
        nullable=True,
    )
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    is_rated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Lifecycle timestamps
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    auto_release_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    escrow_released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), onupdate=func.now(), nullable=False
    )

    # Optimistic lock: concurrent writers to one row cannot both commit
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, status={self.status.value}, "
            f"amount={self.amount}, seller={self.seller_id})>"
        )
