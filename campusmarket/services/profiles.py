"""Profile creation, called by the auth layer when a user first signs in."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from campusmarket.core.database import atomic
from campusmarket.core.errors import ValidationError
from campusmarket.models.profile import Profile
from campusmarket.services.referral import generate_referral_code

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5


def create_profile(
    db: Session,
    email: str,
    full_name: Optional[str] = None,
    phone_number: Optional[str] = None,
    is_admin: bool = False,
    user_id: Optional[str] = None,
) -> Profile:
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")

    with atomic(db):
        if db.scalars(select(Profile).where(Profile.email == email)).first() is not None:
            raise ValidationError("A profile with this email already exists")

        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_referral_code()
            if db.scalars(select(Profile.id).where(Profile.referral_code == code)).first() is None:
                break
        else:
            raise RuntimeError("Could not generate a unique referral code")

        profile = Profile(
            full_name=full_name,
            email=email,
            phone_number=phone_number,
            referral_code=code,
            is_admin=is_admin,
        )
        if user_id:
            profile.id = user_id
        db.add(profile)
        db.flush()

    logger.info("Created profile %s", profile.id)
    return profile
