"""
Ledger Store.

Repository over the SQLAlchemy session that the escrow, referral and
withdrawal services share. Callers own the unit of work (see
core.database.atomic); nothing here commits.

Wallet balances are only ever changed with a single UPDATE ... SET col = col + delta
statement, never read-modify-write. A decrement carries a `col >= amount`
guard in its WHERE clause, so a write that would drive a balance negative
matches no row and aborts the enclosing unit.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campusmarket.core.errors import ConcurrentUpdateError, LedgerInvariantError, NotFoundError
from campusmarket.models.charge_attempt import ChargeAttempt
from campusmarket.models.enums import ChargeStatus, SellerTier, TransactionStatus
from campusmarket.models.profile import Profile
from campusmarket.models.seller_profile import SellerProfile
from campusmarket.models.transaction import Transaction
from campusmarket.models.wallet import Wallet, BALANCE_FIELDS
from campusmarket.services.commission import tier_commission_rate

logger = logging.getLogger(__name__)

SELLER_COUNTERS = ("completed_orders", "disputes_count", "total_ratings")


class LedgerStore:
    """Row-locked reads and atomic increments against the ledger tables."""

    def __init__(self, db: Session):
        self.db = db

    # ─── Lookups ─────────────────────────────────────────────────────

    def get_profile(self, user_id: str) -> Profile:
        profile = self.db.get(Profile, user_id)
        if profile is None:
            raise NotFoundError(f"User {user_id} not found")
        return profile

    def get_transaction(self, transaction_id: str, lock: bool = False) -> Transaction:
        """
        Fetch a transaction. With lock=True the row is selected FOR UPDATE,
        serialising writers on databases that support row locks.
        """
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        if lock:
            stmt = stmt.with_for_update()
        txn = self.db.scalars(stmt).first()
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    def find_transaction_by_checkout(self, checkout_request_id: str, lock: bool = True) -> Optional[Transaction]:
        """Resolve a correlation id from any charge attempt, not just the latest one."""
        attempted = select(ChargeAttempt.transaction_id).where(
            ChargeAttempt.checkout_request_id == checkout_request_id
        )
        stmt = select(Transaction).where(
            or_(
                Transaction.mpesa_checkout_request_id == checkout_request_id,
                Transaction.id.in_(attempted),
            )
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.db.scalars(stmt).first()

    def is_charge_of(self, transaction_id: str, checkout_request_id: str) -> bool:
        stmt = select(ChargeAttempt.id).where(
            ChargeAttempt.transaction_id == transaction_id,
            ChargeAttempt.checkout_request_id == checkout_request_id,
        )
        return self.db.scalars(stmt).first() is not None

    def latest_charge_attempt(self, transaction_id: str) -> Optional[ChargeAttempt]:
        stmt = (
            select(ChargeAttempt)
            .where(ChargeAttempt.transaction_id == transaction_id)
            .order_by(ChargeAttempt.created_at.desc())
        )
        return self.db.scalars(stmt).first()

    def set_charge_status(self, checkout_request_id: str, status: ChargeStatus, result_desc: Optional[str]) -> None:
        self.db.execute(
            update(ChargeAttempt)
            .where(ChargeAttempt.checkout_request_id == checkout_request_id)
            .values(status=status, result_desc=result_desc),
            execution_options={"synchronize_session": False},
        )

    def count_completed_purchases(self, buyer_id: str) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.buyer_id == buyer_id,
            Transaction.status == TransactionStatus.COMPLETED,
        )
        return self.db.scalar(stmt) or 0

    # ─── Lazy creation ───────────────────────────────────────────────

    def get_or_create_wallet(self, user_id: str) -> Wallet:
        wallet = self.db.scalars(select(Wallet).where(Wallet.user_id == user_id)).first()
        if wallet is not None:
            return wallet

        wallet = Wallet(
            user_id=user_id,
            available_balance=Decimal("0"),
            escrow_balance=Decimal("0"),
            total_earned=Decimal("0"),
            total_fees_paid=Decimal("0"),
        )
        self.db.add(wallet)
        self._flush_new_row("wallet", user_id)
        logger.info("[LEDGER] Created wallet for user %s", user_id)
        return wallet

    def get_or_create_seller_profile(self, user_id: str) -> SellerProfile:
        profile = self.db.scalars(select(SellerProfile).where(SellerProfile.user_id == user_id)).first()
        if profile is not None:
            return profile

        profile = SellerProfile(
            user_id=user_id,
            tier=SellerTier.FREE,
            commission_rate=tier_commission_rate(SellerTier.FREE),
        )
        self.db.add(profile)
        self._flush_new_row("seller profile", user_id)
        return profile

    def _flush_new_row(self, kind: str, user_id: str) -> None:
        # A concurrent unit inserting the same per-user row loses on the unique key
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConcurrentUpdateError(f"The {kind} for user {user_id} was created concurrently, please retry") from exc

    # ─── Atomic increments ───────────────────────────────────────────

    def adjust_wallet(self, user_id: str, **deltas: Decimal) -> None:
        """
        Apply signed deltas to a user's wallet in one UPDATE statement.

        Example: adjust_wallet(seller_id, escrow_balance=-amount, available_balance=net)

        Raises LedgerInvariantError if any balance would go negative; the
        caller's unit of work must then roll back.
        """
        unknown = set(deltas) - set(BALANCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown wallet fields: {sorted(unknown)}")

        wallet = self.get_or_create_wallet(user_id)
        self.db.flush()

        values = {"updated_at": func.now()}
        guards = [Wallet.user_id == user_id]
        for field, delta in deltas.items():
            delta = Decimal(delta)
            column = getattr(Wallet, field)
            values[field] = column + delta
            if delta < 0:
                guards.append(column >= -delta)

        result = self.db.execute(
            update(Wallet).where(*guards).values(**values),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            logger.error("[LEDGER] Rejected wallet update for %s: %s", user_id, deltas)
            raise LedgerInvariantError(f"Wallet update for user {user_id} would make a balance negative")

        self.db.expire(wallet)

    def increment_seller_stats(self, user_id: str, **deltas: int) -> None:
        """Atomically bump seller counters such as completed_orders."""
        unknown = set(deltas) - set(SELLER_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown seller counters: {sorted(unknown)}")

        profile = self.get_or_create_seller_profile(user_id)
        self.db.flush()

        values = {field: getattr(SellerProfile, field) + delta for field, delta in deltas.items()}
        values["updated_at"] = func.now()
        self.db.execute(
            update(SellerProfile).where(SellerProfile.user_id == user_id).values(**values),
            execution_options={"synchronize_session": False},
        )
        self.db.expire(profile)

    def record_rating(self, user_id: str, rating: int) -> None:
        """Fold a new rating into the seller's running average in one UPDATE."""
        profile = self.get_or_create_seller_profile(user_id)
        self.db.flush()

        self.db.execute(
            update(SellerProfile)
            .where(SellerProfile.user_id == user_id)
            .values(
                average_rating=(
                    SellerProfile.average_rating * SellerProfile.total_ratings + rating
                ) / (SellerProfile.total_ratings + 1),
                total_ratings=SellerProfile.total_ratings + 1,
                updated_at=func.now(),
            ),
            execution_options={"synchronize_session": False},
        )
        self.db.expire(profile)
