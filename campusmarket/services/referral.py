"""
Referral Credit Engine.

Applying a code links a new user to the referrer and opens a pending
referral. When the referred user's first purchase completes, the referrer's
wallet is credited exactly once: the pending -> credited flip is a guarded
UPDATE inside the same unit as the wallet credit, so a retried completion
finds nothing left to flip.
"""

import logging
import secrets
import string
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campusmarket.core.config import get_settings
from campusmarket.core.database import atomic, utcnow
from campusmarket.core.errors import (
    AlreadyReferredError,
    InvalidCodeError,
    SelfReferralError,
    ValidationError,
)
from campusmarket.models.enums import ReferralStatus
from campusmarket.models.profile import Profile
from campusmarket.models.referral import Referral
from campusmarket.services.events import DomainEvent, EventBus, REFERRAL_CREDITED, event_bus
from campusmarket.services.ledger import LedgerStore

logger = logging.getLogger(__name__)
settings = get_settings()

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


def generate_referral_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class ReferralEngine:
    """Establishes referral relationships and pays out referral credit."""

    def __init__(self, db: Session, events: Optional[EventBus] = None):
        self.db = db
        self.ledger = LedgerStore(db)
        self.events = events or event_bus

    def apply_referral_code(self, user_id: str, code: str) -> Referral:
        """
        Link user_id to the owner of `code` and open a pending referral.

        Raises:
            ValidationError: code is blank
            AlreadyReferredError: the user already has a referrer
            InvalidCodeError: no profile owns the code
            SelfReferralError: the code is the user's own
        """
        if not code or not code.strip():
            raise ValidationError("Referral code is required")

        with atomic(self.db):
            profile = self.ledger.get_profile(user_id)
            if profile.referred_by:
                raise AlreadyReferredError()

            referrer = self.db.scalars(
                select(Profile).where(Profile.referral_code == code.strip().upper())
            ).first()
            if referrer is None:
                raise InvalidCodeError()
            if referrer.id == user_id:
                raise SelfReferralError()

            # Guarded write: a concurrent apply for the same user matches no row
            result = self.db.execute(
                update(Profile)
                .where(Profile.id == user_id, Profile.referred_by.is_(None))
                .values(referred_by=referrer.id),
                execution_options={"synchronize_session": False},
            )
            if result.rowcount != 1:
                raise AlreadyReferredError()

            referral = Referral(
                referrer_id=referrer.id,
                referred_id=user_id,
                status=ReferralStatus.PENDING,
                credit_amount=Decimal(settings.REFERRAL_CREDIT_AMOUNT),
            )
            self.db.add(referral)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise AlreadyReferredError() from exc
            self.db.expire(profile)

        logger.info("[REFERRAL] %s referred by %s", user_id, referrer.id)
        return referral

    def maybe_credit_referral(self, completed_buyer_id: str) -> bool:
        """
        Credit the buyer's referrer if a pending referral exists.
        Silent no-op without a referral. Returns True if a credit was made.
        """
        with atomic(self.db):
            event = self.credit_pending_referral(completed_buyer_id)
        if event is not None:
            self.events.publish(event)
        return event is not None

    def credit_pending_referral(self, buyer_id: str) -> Optional[DomainEvent]:
        """
        Flip the buyer's pending referral to credited and pay the referrer.
        Runs inside the caller's unit of work; returns the event to publish
        after commit, or None when there was nothing to credit.
        """
        now = utcnow()
        result = self.db.execute(
            update(Referral)
            .where(Referral.referred_id == buyer_id, Referral.status == ReferralStatus.PENDING)
            .values(status=ReferralStatus.CREDITED, credited_at=now),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            return None

        referral = self.db.scalars(select(Referral).where(Referral.referred_id == buyer_id)).one()
        self.db.refresh(referral)
        amount = Decimal(referral.credit_amount)
        self.ledger.adjust_wallet(
            referral.referrer_id,
            available_balance=amount,
            total_earned=amount,
        )
        logger.info(
            "[REFERRAL] Credited %s to referrer %s for buyer %s",
            amount, referral.referrer_id, buyer_id,
        )
        return DomainEvent(
            name=REFERRAL_CREDITED,
            recipients=(referral.referrer_id,),
            payload={"referred_id": buyer_id, "amount": str(amount)},
        )
