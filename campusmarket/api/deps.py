"""
Request dependencies: caller identity and shared clients.

Identity comes from the upstream auth layer as an X-User-Id header, trusted
only alongside the service X-API-Key.
"""

import secrets
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from campusmarket.core.config import get_settings
from campusmarket.core.database import get_db
from campusmarket.core.errors import AuthenticationError, NotAuthorizedError
from campusmarket.models.profile import Profile
from campusmarket.services.mpesa_client import MpesaDarajaClient


def get_current_user(
    x_api_key: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Profile:
    if not x_api_key or not secrets.compare_digest(x_api_key, get_settings().API_KEY):
        raise AuthenticationError("Invalid or missing API key")
    if not x_user_id:
        raise AuthenticationError("Missing user identity")

    profile = db.get(Profile, x_user_id)
    if profile is None:
        raise AuthenticationError("Unknown user")
    return profile


def require_admin(user: Profile = Depends(get_current_user)) -> Profile:
    if not user.is_admin:
        raise NotAuthorizedError("Admin access required")
    return user


@lru_cache()
def get_mpesa_client() -> MpesaDarajaClient:
    """Shared client so the OAuth token is reused across requests."""
    return MpesaDarajaClient()
