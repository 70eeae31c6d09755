"""
Database Seed Script.

Seeds a small campus marketplace for local development:
1. Admin        – resolves disputes and processes withdrawals
2. Free seller  – 10% commission, two listings
3. Premium seller – 6% commission locked in for 30 days, one service listing
4. Buyer        – no purchases yet, referred by the free seller
"""

import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from campusmarket.core.database import utcnow
from campusmarket.models.enums import ListingType, ReferralStatus, SellerTier
from campusmarket.models.listing import Listing
from campusmarket.models.profile import Profile
from campusmarket.models.referral import Referral
from campusmarket.models.seller_profile import SellerProfile
from campusmarket.models.wallet import Wallet
from campusmarket.core.config import get_settings
from campusmarket.services.commission import tier_commission_rate

logger = logging.getLogger(__name__)
settings = get_settings()

# Fixed UUIDs for deterministic demo
PERSONAS = {
    "admin": {
        "id": "00000000-0000-0000-0000-000000000001",
        "full_name": "Campus Admin",
        "email": "admin@campusmarket.test",
        "referral_code": "ADMIN001",
        "is_admin": True,
    },
    "free_seller": {
        "id": "11111111-1111-1111-1111-111111111111",
        "full_name": "Wanjiku Kamau",
        "email": "wanjiku@campusmarket.test",
        "referral_code": "WANJIKU1",
        "tier": SellerTier.FREE,
        "listings": [
            (ListingType.ITEM, "Used scientific calculator", Decimal("1000")),
            (ListingType.ITEM, "Hostel mini fridge", Decimal("6500")),
        ],
    },
    "premium_seller": {
        "id": "22222222-2222-2222-2222-222222222222",
        "full_name": "Otieno Odhiambo",
        "email": "otieno@campusmarket.test",
        "referral_code": "OTIENO22",
        "tier": SellerTier.PREMIUM,
        "listings": [
            (ListingType.SERVICE, "Laptop repair (per visit)", Decimal("1500")),
        ],
    },
    "buyer": {
        "id": "33333333-3333-3333-3333-333333333333",
        "full_name": "Achieng Atieno",
        "email": "achieng@campusmarket.test",
        "referral_code": "ACHIENG3",
        "referred_by": "free_seller",
    },
}


def seed_database(db: Session) -> None:
    """
    Seeds the database with demo personas, seller profiles and listings.
    Skips seeding if profiles already exist.
    """
    existing = db.scalar(select(func.count(Profile.id)))
    if existing:
        logger.info(f"Database already has {existing} profiles, skipping seed")
        return

    logger.info("Seeding database with %d personas...", len(PERSONAS))
    now = utcnow()

    for config in PERSONAS.values():
        referrer = PERSONAS[config["referred_by"]]["id"] if config.get("referred_by") else None
        db.add(Profile(
            id=config["id"],
            full_name=config["full_name"],
            email=config["email"],
            referral_code=config["referral_code"],
            referred_by=referrer,
            is_admin=config.get("is_admin", False),
        ))
        db.add(Wallet(
            user_id=config["id"],
            available_balance=Decimal("0"),
            escrow_balance=Decimal("0"),
            total_earned=Decimal("0"),
            total_fees_paid=Decimal("0"),
        ))
        if referrer:
            db.add(Referral(
                referrer_id=referrer,
                referred_id=config["id"],
                status=ReferralStatus.PENDING,
                credit_amount=Decimal(settings.REFERRAL_CREDIT_AMOUNT),
            ))

        if "tier" in config:
            db.add(SellerProfile(
                user_id=config["id"],
                tier=config["tier"],
                commission_rate=tier_commission_rate(config["tier"]),
                tier_expires_at=now + timedelta(days=30) if config["tier"] != SellerTier.FREE else None,
                active_listings_count=len(config["listings"]),
            ))
            for listing_type, title, price in config["listings"]:
                db.add(Listing(listing_type=listing_type, title=title, seller_id=config["id"], price=price))

    db.commit()
    logger.info("Database seeded successfully with %d personas", len(PERSONAS))
