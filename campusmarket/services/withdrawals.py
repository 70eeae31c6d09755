"""
Withdrawal processing.

Requesting a withdrawal debits the available balance immediately (guarded
decrement), so the funds cannot be spent twice while an admin reviews it.
Approving records the payout; rejecting refunds the exact amount with an
atomic increment. Both decisions are a guarded pending -> final flip, so a
withdrawal is decided, and refunded, at most once.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from campusmarket.core.config import get_settings
from campusmarket.core.database import atomic, utcnow
from campusmarket.core.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from campusmarket.models.enums import WithdrawalStatus
from campusmarket.models.withdrawal import Withdrawal
from campusmarket.services import events as ev
from campusmarket.services.escrow import parse_amount
from campusmarket.services.events import DomainEvent, EventBus, event_bus
from campusmarket.services.ledger import LedgerStore
from campusmarket.services.payment_gateway import normalize_phone

logger = logging.getLogger(__name__)
settings = get_settings()


class WithdrawalService:
    """Payout requests against a user's available balance."""

    def __init__(self, db: Session, events: Optional[EventBus] = None):
        self.db = db
        self.ledger = LedgerStore(db)
        self.events = events or event_bus

    def request_withdrawal(self, user_id: str, amount, phone_number: str) -> Withdrawal:
        value = parse_amount(amount)
        if value < Decimal(settings.MIN_WITHDRAWAL_AMOUNT):
            raise ValidationError(f"Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT}")
        phone = normalize_phone(phone_number)

        with atomic(self.db):
            self.ledger.get_profile(user_id)
            try:
                self.ledger.adjust_wallet(user_id, available_balance=-value)
            except LedgerInvariantError as exc:
                raise InsufficientBalanceError() from exc

            withdrawal = Withdrawal(
                user_id=user_id,
                amount=value,
                phone_number=phone,
                status=WithdrawalStatus.PENDING,
            )
            self.db.add(withdrawal)
            self.db.flush()
            withdrawal_id = withdrawal.id

        logger.info("[WITHDRAWAL] %s requested %s to %s", user_id, value, phone)
        self.events.publish(DomainEvent(
            name=ev.WITHDRAWAL_REQUESTED,
            recipients=(user_id,),
            payload={"withdrawal_id": withdrawal_id, "amount": str(value)},
        ))
        return withdrawal

    def approve_withdrawal(
        self,
        withdrawal_id: str,
        admin_id: str,
        mpesa_transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Withdrawal:
        """Mark a pending withdrawal as paid out."""
        with atomic(self.db):
            withdrawal = self._decide(
                withdrawal_id,
                WithdrawalStatus.COMPLETED,
                admin_id,
                notes,
                mpesa_transaction_id=mpesa_transaction_id or None,
            )
            user_id, amount = withdrawal.user_id, withdrawal.amount

        logger.info("[WITHDRAWAL] %s approved by %s", withdrawal_id, admin_id)
        self.events.publish(DomainEvent(
            name=ev.WITHDRAWAL_COMPLETED,
            recipients=(user_id,),
            payload={"withdrawal_id": withdrawal_id, "amount": str(amount)},
        ))
        return withdrawal

    def reject_withdrawal(self, withdrawal_id: str, admin_id: str, notes: Optional[str] = None) -> Withdrawal:
        """Reject a pending withdrawal and return its amount to the available balance."""
        with atomic(self.db):
            withdrawal = self._decide(withdrawal_id, WithdrawalStatus.REJECTED, admin_id, notes)
            user_id, amount = withdrawal.user_id, withdrawal.amount
            self.ledger.adjust_wallet(user_id, available_balance=amount)

        logger.info("[WITHDRAWAL] %s rejected by %s, %s refunded", withdrawal_id, admin_id, amount)
        self.events.publish(DomainEvent(
            name=ev.WITHDRAWAL_REJECTED,
            recipients=(user_id,),
            payload={"withdrawal_id": withdrawal_id, "amount": str(amount), "notes": notes},
        ))
        return withdrawal

    def list_withdrawals(self, user_id: Optional[str] = None, status: Optional[WithdrawalStatus] = None) -> list[Withdrawal]:
        stmt = select(Withdrawal).order_by(Withdrawal.created_at.desc())
        if user_id:
            stmt = stmt.where(Withdrawal.user_id == user_id)
        if status:
            stmt = stmt.where(Withdrawal.status == status)
        return list(self.db.scalars(stmt))

    def _decide(
        self,
        withdrawal_id: str,
        status: WithdrawalStatus,
        admin_id: str,
        notes: Optional[str],
        **extra,
    ) -> Withdrawal:
        withdrawal = self.db.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")

        result = self.db.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == WithdrawalStatus.PENDING)
            .values(
                status=status,
                processed_by=admin_id,
                processed_at=utcnow(),
                notes=notes,
                **extra,
            ),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            raise InvalidTransitionError(f"Withdrawal {withdrawal_id} has already been processed")

        self.db.refresh(withdrawal)
        return withdrawal
