"""Seller tier assignment. The tier's commission rate is locked in when assigned."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from campusmarket.core.database import atomic
from campusmarket.core.errors import ValidationError
from campusmarket.models.enums import SellerTier
from campusmarket.models.seller_profile import SellerProfile
from campusmarket.services.commission import tier_commission_rate
from campusmarket.services.ledger import LedgerStore

logger = logging.getLogger(__name__)


def assign_tier(db: Session, user_id: str, tier: str, expires_at: Optional[datetime] = None) -> SellerProfile:
    try:
        new_tier = SellerTier(tier)
    except ValueError:
        raise ValidationError("Tier must be one of: free, premium, trusted")
    if new_tier == SellerTier.FREE and expires_at is not None:
        raise ValidationError("The free tier does not expire")

    ledger = LedgerStore(db)
    with atomic(db):
        ledger.get_profile(user_id)
        profile = ledger.get_or_create_seller_profile(user_id)
        profile.tier = new_tier
        profile.commission_rate = tier_commission_rate(new_tier)
        profile.tier_expires_at = expires_at

    logger.info("Seller %s moved to %s tier (expires %s)", user_id, new_tier.value, expires_at)
    return profile
