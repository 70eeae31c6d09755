"""
Escrow Transaction State Machine.

Owns every status change of a Transaction and the wallet movements tied to it.

State machine:
    pending_payment -> paid_escrow    (gateway confirms the charge)
    pending_payment -> cancelled      (buyer/seller cancels, or payment declined or unanswered)
    paid_escrow     -> delivered      (seller marks delivered)
    paid_escrow     -> completed      (both parties confirmed, buyer first)
    delivered       -> completed      (buyer confirms receipt)
    paid_escrow     -> disputed
    delivered       -> disputed
    disputed        -> refunded       (resolution: refund)
    disputed        -> completed      (resolution: release)

Wallet effects:
    paid:      seller.escrow_balance += amount
    completed: seller.escrow_balance -= amount
               seller.available_balance += seller_amount
               seller.total_earned += seller_amount
               seller.total_fees_paid += platform_fee
    refunded:  seller.escrow_balance -= amount

Each public method is one unit of work: the status change and its wallet
effects commit together or not at all. Events are published after commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from campusmarket.core.config import get_settings
from campusmarket.core.database import atomic, utcnow
from campusmarket.core.errors import (
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    SelfTradeError,
    ValidationError,
)
from campusmarket.models.enums import (
    DisputeResolution,
    ListingType,
    TransactionStatus,
)
from campusmarket.models.charge_attempt import ChargeAttempt
from campusmarket.models.listing import Listing
from campusmarket.models.mpesa_callback import MpesaCallback
from campusmarket.models.review import Review
from campusmarket.models.transaction import Transaction
from campusmarket.services import events as ev
from campusmarket.services.commission import compute_split, effective_commission_rate
from campusmarket.services.events import DomainEvent, EventBus, event_bus
from campusmarket.services.ledger import LedgerStore
from campusmarket.services.referral import ReferralEngine

logger = logging.getLogger(__name__)
settings = get_settings()

S = TransactionStatus

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PAID_ESCROW, S.CANCELLED}),
    S.PAID_ESCROW: frozenset({S.DELIVERED, S.COMPLETED, S.DISPUTED}),
    S.DELIVERED: frozenset({S.COMPLETED, S.DISPUTED}),
    S.DISPUTED: frozenset({S.REFUNDED, S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.REFUNDED: frozenset(),
    S.CANCELLED: frozenset(),
}

CONFIRMABLE_STATUSES = (S.PAID_ESCROW, S.DELIVERED)


@dataclass(frozen=True)
class DeliveryOutcome:
    completed: bool
    status: TransactionStatus


def parse_amount(raw) -> Decimal:
    """Parse a gross amount: positive and a whole number of currency units."""
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount != amount.to_integral_value():
        raise ValidationError("Amount must be a whole number")
    return amount


class EscrowService:
    """
    Escrow lifecycle operations.

    Usage:
        service = EscrowService(db)
        txn = service.create_transaction(buyer_id, seller_id, listing_id, "item", 1000)
        service.confirm_escrow_payment(txn.id, "QK12ABC", "ws_CO_123")
        service.confirm_delivery(txn.id, seller_id)
        outcome = service.confirm_delivery(txn.id, buyer_id)   # completed=True
    """

    def __init__(self, db: Session, events: Optional[EventBus] = None):
        self.db = db
        self.ledger = LedgerStore(db)
        self.events = events or event_bus

    # ─── Checkout ────────────────────────────────────────────────────

    def create_transaction(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        listing_type: str,
        gross_amount,
    ) -> Transaction:
        """
        Open a transaction in pending_payment with the fee split fixed from
        the seller's current commission rate. No wallet moves yet.
        """
        if buyer_id == seller_id:
            raise SelfTradeError()
        if not listing_id:
            raise ValidationError("Listing is required")
        try:
            kind = ListingType(listing_type)
        except ValueError:
            raise ValidationError("Listing type must be 'item' or 'service'")
        amount = parse_amount(gross_amount)

        now = utcnow()
        with atomic(self.db):
            self.ledger.get_profile(buyer_id)
            self.ledger.get_profile(seller_id)

            listing = self.db.get(Listing, listing_id)
            if listing is not None and listing.seller_id != seller_id:
                raise ValidationError("Listing does not belong to this seller")
            if listing is not None and listing.listing_type != kind:
                raise ValidationError("Listing type does not match the listing")

            seller_profile = self.ledger.get_or_create_seller_profile(seller_id)
            rate = effective_commission_rate(seller_profile, now)
            platform_fee, seller_amount = compute_split(amount, rate)

            txn = Transaction(
                listing_id=listing_id,
                listing_type=kind,
                listing_title=listing.title if listing is not None else "Unknown",
                amount=amount,
                commission_rate=rate,
                platform_fee=platform_fee,
                seller_amount=seller_amount,
                buyer_id=buyer_id,
                seller_id=seller_id,
                status=S.PENDING_PAYMENT,
            )
            self.db.add(txn)
            self.db.flush()
            txn_id = txn.id

        logger.info(
            "[ESCROW] Created %s | amount=%s fee=%s net=%s rate=%s%%",
            txn_id, amount, platform_fee, seller_amount, rate,
        )
        self.events.publish(DomainEvent(
            name=ev.TRANSACTION_CREATED,
            recipients=(seller_id,),
            transaction_id=txn_id,
            payload={"amount": str(amount), "listing_title": txn.listing_title},
        ))
        return txn

    # ─── Payment ─────────────────────────────────────────────────────

    def confirm_escrow_payment(self, transaction_id: str, receipt_number: str, correlation_id: Optional[str]) -> bool:
        """
        Move a paid transaction into escrow and hold the gross amount on the
        seller's escrow balance.

        Idempotent: a transaction already past pending_payment is left alone
        and False is returned.
        """
        if not receipt_number:
            raise ValidationError("Receipt number is required")

        now = utcnow()
        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if txn.status != S.PENDING_PAYMENT:
                if txn.status == S.CANCELLED:
                    logger.warning(
                        "[ESCROW] Payment %s arrived for cancelled transaction %s; needs manual refund",
                        receipt_number, transaction_id,
                    )
                elif txn.mpesa_receipt_number not in (None, receipt_number):
                    logger.warning(
                        "[ESCROW] Second payment %s for %s already paid by %s; needs manual refund",
                        receipt_number, transaction_id, txn.mpesa_receipt_number,
                    )
                else:
                    logger.info("[ESCROW] Duplicate payment confirmation for %s ignored", transaction_id)
                return False

            if (
                correlation_id
                and txn.mpesa_checkout_request_id not in (None, correlation_id)
                and not self.ledger.is_charge_of(txn.id, correlation_id)
            ):
                raise ValidationError("Correlation id does not match this transaction")

            self._transition(txn, S.PAID_ESCROW)
            txn.mpesa_checkout_request_id = correlation_id or txn.mpesa_checkout_request_id
            txn.mpesa_receipt_number = receipt_number
            txn.paid_at = now
            txn.auto_release_at = now + timedelta(days=settings.AUTO_RELEASE_DAYS)

            self.ledger.adjust_wallet(txn.seller_id, escrow_balance=txn.amount)
            self.ledger.get_or_create_wallet(txn.buyer_id)
            recipients = (txn.buyer_id, txn.seller_id)
            amount = txn.amount

        logger.info("[ESCROW] %s paid into escrow | receipt=%s amount=%s", transaction_id, receipt_number, amount)
        self.events.publish(DomainEvent(
            name=ev.TRANSACTION_PAID,
            recipients=recipients,
            transaction_id=transaction_id,
            payload={"receipt_number": receipt_number, "amount": str(amount)},
        ))
        return True

    # ─── Delivery ────────────────────────────────────────────────────

    def confirm_delivery(self, transaction_id: str, acting_user_id: str) -> DeliveryOutcome:
        """
        Record the acting party's confirmation. The seller's mark moves
        paid_escrow to delivered; once both parties have confirmed, in either
        order, escrow is released.
        """
        now = utcnow()
        pending_events: list[DomainEvent] = []

        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if not txn.is_party(acting_user_id):
                raise NotAuthorizedError("Only the buyer or seller can confirm delivery")
            if txn.status not in CONFIRMABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot confirm delivery on a transaction that is {txn.status.value}"
                )

            if acting_user_id == txn.seller_id:
                txn.seller_confirmed_delivery = True
                txn.delivered_at = now
                if txn.status == S.PAID_ESCROW:
                    self._transition(txn, S.DELIVERED)
                    pending_events.append(DomainEvent(
                        name=ev.TRANSACTION_DELIVERED,
                        recipients=(txn.buyer_id,),
                        transaction_id=txn.id,
                    ))

            if acting_user_id == txn.buyer_id and not txn.buyer_confirmed:
                txn.buyer_confirmed = True
                txn.buyer_confirmed_at = now

            completed = txn.seller_confirmed_delivery and txn.buyer_confirmed
            if completed:
                pending_events.extend(self._release(txn, now))
            status = txn.status

        logger.info("[ESCROW] Delivery confirmed on %s by %s | completed=%s", transaction_id, acting_user_id, completed)
        self.events.publish_all(pending_events)
        return DeliveryOutcome(completed=completed, status=status)

    # ─── Disputes ────────────────────────────────────────────────────

    def raise_dispute(self, transaction_id: str, acting_user_id: str, reason: str) -> Transaction:
        """Freeze escrowed funds pending an admin decision."""
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")

        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if not txn.is_party(acting_user_id):
                raise NotAuthorizedError("Only the buyer or seller can raise a dispute")
            self._transition(txn, S.DISPUTED)
            txn.dispute_reason = reason.strip()
            txn.disputed_at = utcnow()
            self.ledger.increment_seller_stats(txn.seller_id, disputes_count=1)
            recipients = (txn.buyer_id, txn.seller_id)

        logger.info("[ESCROW] Dispute raised on %s by %s", transaction_id, acting_user_id)
        self.events.publish(DomainEvent(
            name=ev.TRANSACTION_DISPUTED,
            recipients=recipients,
            transaction_id=transaction_id,
            payload={"reason": reason.strip(), "raised_by": acting_user_id},
        ))
        return txn

    def resolve_dispute(self, transaction_id: str, resolution: str) -> Transaction:
        """
        Settle a dispute. `refund` drains the seller's escrow without
        crediting anyone (the buyer is repaid through the gateway);
        `release` completes the transaction exactly like a normal confirmation.
        """
        try:
            decision = DisputeResolution(resolution)
        except ValueError:
            raise ValidationError("Resolution must be 'refund' or 'release'")

        now = utcnow()
        pending_events: list[DomainEvent] = []
        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if txn.status != S.DISPUTED:
                raise InvalidTransitionError(
                    f"Cannot resolve a dispute on a transaction that is {txn.status.value}"
                )
            txn.dispute_resolution = decision

            if decision == DisputeResolution.REFUND:
                self._transition(txn, S.REFUNDED)
                txn.refunded_at = now
                self.ledger.adjust_wallet(txn.seller_id, escrow_balance=-txn.amount)
                pending_events.append(DomainEvent(
                    name=ev.TRANSACTION_REFUNDED,
                    recipients=(txn.buyer_id, txn.seller_id),
                    transaction_id=txn.id,
                    payload={"amount": str(txn.amount)},
                ))
            else:
                pending_events.extend(self._release(txn, now))

        logger.info("[ESCROW] Dispute on %s resolved: %s", transaction_id, decision.value)
        self.events.publish_all(pending_events)
        return txn

    # ─── Cancellation & sweeps ───────────────────────────────────────

    def cancel_transaction(self, transaction_id: str, acting_user_id: str) -> Transaction:
        """Abandon a checkout before any money has moved."""
        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if not txn.is_party(acting_user_id):
                raise NotAuthorizedError("Only the buyer or seller can cancel this transaction")
            self._transition(txn, S.CANCELLED)
            txn.cancelled_at = utcnow()
            recipients = (txn.buyer_id, txn.seller_id)

        logger.info("[ESCROW] %s cancelled by %s", transaction_id, acting_user_id)
        self.events.publish(DomainEvent(
            name=ev.TRANSACTION_CANCELLED,
            recipients=recipients,
            transaction_id=transaction_id,
        ))
        return txn

    def due_for_auto_release(self, now: Optional[datetime] = None) -> list[str]:
        now = now or utcnow()
        stmt = select(Transaction.id).where(
            Transaction.status.in_(CONFIRMABLE_STATUSES),
            Transaction.auto_release_at.is_not(None),
            Transaction.auto_release_at <= now,
        )
        return list(self.db.scalars(stmt))

    def auto_release(self, transaction_id: str, now: Optional[datetime] = None) -> bool:
        """
        Force completion of an escrow whose deadline has passed, treating the
        buyer as having confirmed receipt. Returns False if the transaction is
        no longer eligible (already confirmed, disputed, or not yet due).
        """
        now = now or utcnow()
        pending_events: list[DomainEvent] = []
        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if txn.status not in CONFIRMABLE_STATUSES:
                return False
            if txn.auto_release_at is None or txn.auto_release_at > now:
                return False

            txn.buyer_confirmed = True
            txn.buyer_confirmed_at = now
            pending_events.extend(self._release(txn, now))

        logger.info("[AUTO-RELEASE] Escrow for %s released after deadline", transaction_id)
        self.events.publish_all(pending_events)
        return True

    def _expirable(self, cutoff: datetime):
        """
        Pending checkouts created before `cutoff` with no prompt sent after it
        and no verified successful callback on any of their checkout ids.
        A successful callback that was not applied belongs to reconciliation.
        """
        paid_via_attempt = (
            select(MpesaCallback.id)
            .join(ChargeAttempt, ChargeAttempt.checkout_request_id == MpesaCallback.checkout_request_id)
            .where(
                ChargeAttempt.transaction_id == Transaction.id,
                MpesaCallback.result_code == 0,
                MpesaCallback.verified.is_(True),
            )
            .exists()
        )
        paid_via_latest = (
            select(MpesaCallback.id)
            .where(
                MpesaCallback.checkout_request_id == Transaction.mpesa_checkout_request_id,
                MpesaCallback.result_code == 0,
                MpesaCallback.verified.is_(True),
            )
            .exists()
        )
        recent_prompt = (
            select(ChargeAttempt.id)
            .where(ChargeAttempt.transaction_id == Transaction.id, ChargeAttempt.created_at > cutoff)
            .exists()
        )
        return select(Transaction.id).where(
            Transaction.status == S.PENDING_PAYMENT,
            Transaction.created_at <= cutoff,
            ~paid_via_attempt,
            ~paid_via_latest,
            ~recent_prompt,
        )

    def stale_pending_payments(self, cutoff: datetime) -> list[str]:
        return list(self.db.scalars(self._expirable(cutoff)))

    def expire_pending_payment(self, transaction_id: str, cutoff: datetime) -> bool:
        """Cancel a checkout that was never paid, or whose prompts were all declined, before `cutoff`."""
        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            still_expirable = self.db.scalars(
                self._expirable(cutoff).where(Transaction.id == txn.id)
            ).first()
            if still_expirable is None:
                return False
            self._transition(txn, S.CANCELLED)
            txn.cancelled_at = utcnow()
            recipients = (txn.buyer_id,)

        logger.info("[ESCROW] %s expired without payment", transaction_id)
        self.events.publish(DomainEvent(
            name=ev.TRANSACTION_CANCELLED,
            recipients=recipients,
            transaction_id=transaction_id,
            payload={"reason": "payment_not_completed"},
        ))
        return True

    # ─── Reads & ratings ─────────────────────────────────────────────

    def get_transaction_status(self, transaction_id: str, acting_user_id: str) -> Transaction:
        """Read-only status lookup for either party; used by payment polling."""
        txn = self.ledger.get_transaction(transaction_id)
        if not txn.is_party(acting_user_id):
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    def rate_transaction(self, transaction_id: str, acting_user_id: str, rating: int, comment: Optional[str] = None) -> Review:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")

        with atomic(self.db):
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if acting_user_id != txn.buyer_id:
                raise NotAuthorizedError("Only the buyer can rate this transaction")
            if txn.status != S.COMPLETED:
                raise InvalidTransitionError("Only completed transactions can be rated")
            if txn.is_rated:
                raise InvalidTransitionError("This transaction has already been rated")

            review = Review(
                transaction_id=txn.id,
                seller_id=txn.seller_id,
                reviewer_id=acting_user_id,
                rating=rating,
                comment=(comment or "").strip() or None,
            )
            self.db.add(review)
            txn.is_rated = True
            self.ledger.record_rating(txn.seller_id, rating)

        logger.info("[ESCROW] %s rated %d by buyer", transaction_id, rating)
        return review

    # ─── Internals ───────────────────────────────────────────────────

    def _transition(self, txn: Transaction, target: TransactionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[txn.status]:
            raise InvalidTransitionError(
                f"Cannot move transaction from {txn.status.value} to {target.value}"
            )
        txn.status = target

    def _release(self, txn: Transaction, now: datetime) -> list[DomainEvent]:
        """
        Complete the transaction and move the seller's proceeds out of escrow.
        Must run inside the caller's unit of work; every write here rolls back
        together if any one fails.
        """
        self._transition(txn, S.COMPLETED)
        txn.completed_at = now
        txn.escrow_released_at = now

        self.ledger.adjust_wallet(
            txn.seller_id,
            escrow_balance=-txn.amount,
            available_balance=txn.seller_amount,
            total_earned=txn.seller_amount,
            total_fees_paid=txn.platform_fee,
        )
        self.ledger.increment_seller_stats(txn.seller_id, completed_orders=1)
        self.db.flush()

        released = [DomainEvent(
            name=ev.TRANSACTION_COMPLETED,
            recipients=(txn.buyer_id, txn.seller_id),
            transaction_id=txn.id,
            payload={"seller_amount": str(txn.seller_amount), "platform_fee": str(txn.platform_fee)},
        )]

        if txn.buyer_id and self.ledger.count_completed_purchases(txn.buyer_id) == 1:
            referral_event = ReferralEngine(self.db, self.events).credit_pending_referral(txn.buyer_id)
            if referral_event is not None:
                released.append(referral_event)

        logger.info(
            "[ESCROW] Released %s | seller=%s net=%s fee=%s",
            txn.id, txn.seller_id, txn.seller_amount, txn.platform_fee,
        )
        return released
