"""
Profile model representing a marketplace user.
Holds the user's referral code and who referred them.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from campusmarket.core.database import Base


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        doc="Unique user identifier (UUID)"
    )
    full_name: Mapped[Optional[str]] = mapped_column(
        String(120),
        nullable=True,
        doc="User display name"
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        doc="User email address"
    )
    phone_number: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        doc="Verified mobile-money phone number"
    )
    referral_code: Mapped[str] = mapped_column(
        String(16),
        unique=True,
        nullable=False,
        doc="Upper-case code other users enter to be referred by this user"
    )
    referred_by: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("profiles.id"),
        nullable=True,
        doc="Profile that referred this user; set at most once"
    )
    is_admin: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        doc="Whether the user may resolve disputes and process withdrawals"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, email={self.email}, code={self.referral_code})>"
