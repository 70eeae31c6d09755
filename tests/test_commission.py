"""Tests for the commission calculator and tier rates."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from campusmarket.core.errors import ValidationError
from campusmarket.models.enums import SellerTier
from campusmarket.models.seller_profile import SellerProfile
from campusmarket.services.commission import (
    compute_split,
    effective_commission_rate,
    tier_commission_rate,
)


def _now() -> datetime:
    return datetime(2026, 10, 19, 12, 0, 0)


class TestComputeSplit:
    def test_free_tier_split(self):
        assert compute_split(Decimal("1000"), Decimal("10")) == (Decimal("100"), Decimal("900"))

    def test_premium_tier_split(self):
        assert compute_split(Decimal("1000"), Decimal("6")) == (Decimal("60"), Decimal("940"))

    def test_fee_rounds_up_to_whole_unit(self):
        fee, net = compute_split(Decimal("155"), Decimal("6"))
        # 155 * 6% = 9.3
        assert fee == Decimal("10")
        assert net == Decimal("145")

    @pytest.mark.parametrize("gross", ["1", "99", "1001", "12345"])
    @pytest.mark.parametrize("rate", ["0", "5", "6", "10", "100"])
    def test_parts_sum_to_gross(self, gross, rate):
        fee, net = compute_split(Decimal(gross), Decimal(rate))
        assert fee + net == Decimal(gross)
        assert fee >= 0 and net >= 0

    def test_zero_rate_takes_nothing(self):
        assert compute_split(Decimal("500"), Decimal("0")) == (Decimal("0"), Decimal("500"))

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValidationError):
            compute_split(Decimal("0"), Decimal("10"))

    def test_rejects_rate_out_of_range(self):
        with pytest.raises(ValidationError):
            compute_split(Decimal("100"), Decimal("101"))
        with pytest.raises(ValidationError):
            compute_split(Decimal("100"), Decimal("-1"))


class TestTierRates:
    def test_tier_table(self):
        assert tier_commission_rate(SellerTier.FREE) == Decimal("10")
        assert tier_commission_rate(SellerTier.PREMIUM) == Decimal("6")
        assert tier_commission_rate(SellerTier.TRUSTED) == Decimal("5")

    def test_missing_profile_pays_free_rate(self):
        assert effective_commission_rate(None, _now()) == Decimal("10")

    def test_locked_rate_applies_until_expiry(self):
        profile = SellerProfile(
            tier=SellerTier.PREMIUM,
            commission_rate=Decimal("6"),
            tier_expires_at=_now() + timedelta(days=1),
        )
        assert effective_commission_rate(profile, _now()) == Decimal("6")

    def test_expired_tier_falls_back_to_free_rate(self):
        profile = SellerProfile(
            tier=SellerTier.PREMIUM,
            commission_rate=Decimal("6"),
            tier_expires_at=_now() - timedelta(seconds=1),
        )
        assert effective_commission_rate(profile, _now()) == Decimal("10")

    def test_tier_without_expiry_keeps_rate(self):
        profile = SellerProfile(tier=SellerTier.TRUSTED, commission_rate=Decimal("5"), tier_expires_at=None)
        assert effective_commission_rate(profile, _now()) == Decimal("5")
