"""
Commission Calculator.

Splits a gross amount into the platform fee and the seller's net proceeds.
The fee is rounded up to a whole currency unit, so the platform never takes
a fractional shilling and the seller never receives one.

Tier rates:
  - free:    10%
  - premium:  6%
  - trusted:  5%
"""

from datetime import datetime
from decimal import Decimal, ROUND_CEILING
from typing import Optional

from campusmarket.core.config import get_settings
from campusmarket.core.errors import ValidationError
from campusmarket.models.enums import SellerTier
from campusmarket.models.seller_profile import SellerProfile

settings = get_settings()

HUNDRED = Decimal("100")


def tier_commission_rate(tier: SellerTier) -> Decimal:
    """Contracted commission rate (%) for a seller tier."""
    rates = {
        SellerTier.FREE: settings.COMMISSION_RATE_FREE,
        SellerTier.PREMIUM: settings.COMMISSION_RATE_PREMIUM,
        SellerTier.TRUSTED: settings.COMMISSION_RATE_TRUSTED,
    }
    return Decimal(rates[SellerTier(tier)])


def effective_commission_rate(profile: Optional[SellerProfile], now: datetime) -> Decimal:
    """
    Rate to charge a seller right now.
    A tier upgrade locks in its rate until tier_expires_at; afterwards the
    seller pays the free-tier rate again.
    """
    if profile is None:
        return tier_commission_rate(SellerTier.FREE)
    if profile.tier_expires_at is not None and profile.tier_expires_at <= now:
        return tier_commission_rate(SellerTier.FREE)
    return Decimal(profile.commission_rate)


def compute_split(gross_amount: Decimal, commission_rate_percent: Decimal) -> tuple[Decimal, Decimal]:
    """
    Compute (platform_fee, seller_amount) for a gross amount.

    platform_fee = ceil(gross * rate / 100); seller_amount = gross - platform_fee.

    Args:
        gross_amount: Whole-unit transaction amount, must be positive
        commission_rate_percent: Rate between 0 and 100

    Returns:
        Tuple whose parts always sum back to gross_amount
    """
    gross = Decimal(gross_amount)
    rate = Decimal(commission_rate_percent)

    if gross <= 0:
        raise ValidationError("Amount must be greater than zero")
    if rate < 0 or rate > HUNDRED:
        raise ValidationError("Commission rate must be between 0 and 100")

    platform_fee = (gross * rate / HUNDRED).to_integral_value(rounding=ROUND_CEILING)
    seller_amount = gross - platform_fee
    return platform_fee, seller_amount
