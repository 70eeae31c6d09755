"""Tests for the escrow state machine: proves lifecycle and wallet invariants hold."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from campusmarket.core.database import atomic, utcnow
from campusmarket.core.errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    LedgerInvariantError,
    NotAuthorizedError,
    NotFoundError,
    SelfTradeError,
    ValidationError,
)
from campusmarket.models.enums import TransactionStatus
from campusmarket.models.review import Review
from campusmarket.models.transaction import Transaction
from campusmarket.services import events as ev
from campusmarket.services.ledger import LedgerStore
from campusmarket.services.sellers import assign_tier


class TestCreateTransaction:
    def test_split_fixed_at_creation(self, escrow, pending_txn):
        assert pending_txn.status == TransactionStatus.PENDING_PAYMENT
        assert pending_txn.amount == Decimal("1000")
        assert pending_txn.commission_rate == Decimal("10")
        assert pending_txn.platform_fee == Decimal("100")
        assert pending_txn.seller_amount == Decimal("900")
        assert pending_txn.platform_fee + pending_txn.seller_amount == pending_txn.amount

    def test_premium_seller_rate(self, db, escrow, buyer, seller, listing):
        assign_tier(db, seller.id, "premium", utcnow() + timedelta(days=30))
        txn = escrow.create_transaction(buyer.id, seller.id, listing.id, "item", 1000)
        assert txn.platform_fee == Decimal("60")
        assert txn.seller_amount == Decimal("940")

    def test_later_tier_change_does_not_touch_existing_split(self, db, escrow, pending_txn, seller):
        assign_tier(db, seller.id, "trusted")
        db.expire_all()
        txn = db.get(Transaction, pending_txn.id)
        assert txn.commission_rate == Decimal("10")
        assert txn.platform_fee == Decimal("100")
        assert txn.seller_amount == Decimal("900")

    def test_snapshots_listing_title(self, pending_txn):
        assert pending_txn.listing_title == "Used scientific calculator"

    def test_unknown_listing_is_titled_unknown(self, escrow, buyer, seller):
        txn = escrow.create_transaction(buyer.id, seller.id, "no-such-listing", "service", 500)
        assert txn.listing_title == "Unknown"

    def test_self_trade_rejected_without_row(self, db, escrow, seller, listing):
        with pytest.raises(SelfTradeError):
            escrow.create_transaction(seller.id, seller.id, listing.id, "item", 1000)
        assert db.scalar(select(func.count(Transaction.id))) == 0

    def test_listing_of_another_seller_rejected(self, escrow, make_profile, buyer, listing):
        other = make_profile("other")
        with pytest.raises(ValidationError):
            escrow.create_transaction(buyer.id, other.id, listing.id, "item", 1000)

    @pytest.mark.parametrize("amount", [0, -5, "12.50", "abc", None])
    def test_invalid_amount_rejected(self, escrow, buyer, seller, listing, amount):
        with pytest.raises(ValidationError):
            escrow.create_transaction(buyer.id, seller.id, listing.id, "item", amount)

    def test_invalid_listing_type_rejected(self, escrow, buyer, seller, listing):
        with pytest.raises(ValidationError):
            escrow.create_transaction(buyer.id, seller.id, listing.id, "vehicle", 1000)

    def test_unknown_seller_not_found(self, escrow, buyer):
        with pytest.raises(NotFoundError):
            escrow.create_transaction(buyer.id, "missing-seller", "listing", "item", 1000)

    def test_no_wallet_movement_and_created_event(self, pending_txn, seller, wallet_of, recorder):
        wallet = wallet_of(seller.id)
        assert wallet is None or wallet.escrow_balance == 0
        assert recorder.names == [ev.TRANSACTION_CREATED]


class TestConfirmEscrowPayment:
    def test_holds_gross_in_seller_escrow(self, escrow, pending_txn, seller, wallet_of):
        assert escrow.confirm_escrow_payment(pending_txn.id, "QK12ABC345", "ws_CO_1") is True

        assert pending_txn.status == TransactionStatus.PAID_ESCROW
        assert pending_txn.mpesa_receipt_number == "QK12ABC345"
        assert pending_txn.auto_release_at - pending_txn.paid_at == timedelta(days=7)
        wallet = wallet_of(seller.id)
        assert wallet.escrow_balance == Decimal("1000")
        assert wallet.available_balance == Decimal("0")

    def test_second_confirmation_is_noop(self, escrow, pending_txn, seller, wallet_of, recorder):
        escrow.confirm_escrow_payment(pending_txn.id, "QK12ABC345", "ws_CO_1")
        assert escrow.confirm_escrow_payment(pending_txn.id, "QK12ABC345", "ws_CO_1") is False

        assert wallet_of(seller.id).escrow_balance == Decimal("1000")
        assert recorder.names.count(ev.TRANSACTION_PAID) == 1

    def test_payment_for_cancelled_transaction_ignored(self, escrow, pending_txn, buyer, seller, wallet_of):
        escrow.cancel_transaction(pending_txn.id, buyer.id)
        assert escrow.confirm_escrow_payment(pending_txn.id, "QK12ABC345", "ws_CO_1") is False
        wallet = wallet_of(seller.id)
        assert wallet is None or wallet.escrow_balance == 0

    def test_buyer_wallet_created(self, escrow, paid_txn, buyer, wallet_of):
        assert wallet_of(buyer.id) is not None


class TestConfirmDelivery:
    def test_seller_then_buyer_releases_escrow(self, escrow, paid_txn, buyer, seller, wallet_of, seller_profile_of):
        outcome = escrow.confirm_delivery(paid_txn.id, seller.id)
        assert outcome.completed is False
        assert outcome.status == TransactionStatus.DELIVERED

        outcome = escrow.confirm_delivery(paid_txn.id, buyer.id)
        assert outcome.completed is True
        assert outcome.status == TransactionStatus.COMPLETED

        wallet = wallet_of(seller.id)
        assert wallet.escrow_balance == Decimal("0")
        assert wallet.available_balance == Decimal("900")
        assert wallet.total_earned == Decimal("900")
        assert wallet.total_fees_paid == Decimal("100")
        assert seller_profile_of(seller.id).completed_orders == 1

    def test_buyer_first_is_order_independent(self, escrow, paid_txn, buyer, seller, wallet_of):
        outcome = escrow.confirm_delivery(paid_txn.id, buyer.id)
        assert outcome.completed is False
        assert outcome.status == TransactionStatus.PAID_ESCROW

        outcome = escrow.confirm_delivery(paid_txn.id, seller.id)
        assert outcome.completed is True

        wallet = wallet_of(seller.id)
        assert wallet.escrow_balance == Decimal("0")
        assert wallet.available_balance == Decimal("900")

    def test_completion_timestamps_and_events(self, escrow, paid_txn, buyer, seller, recorder):
        escrow.confirm_delivery(paid_txn.id, seller.id)
        escrow.confirm_delivery(paid_txn.id, buyer.id)

        assert paid_txn.completed_at is not None
        assert paid_txn.escrow_released_at is not None
        assert recorder.names[-2:] == [ev.TRANSACTION_DELIVERED, ev.TRANSACTION_COMPLETED]

    def test_outsider_rejected_without_mutation(self, db, escrow, paid_txn, make_profile, seller, wallet_of):
        outsider = make_profile("outsider")
        with pytest.raises(NotAuthorizedError):
            escrow.confirm_delivery(paid_txn.id, outsider.id)

        db.expire_all()
        txn = db.get(Transaction, paid_txn.id)
        assert txn.status == TransactionStatus.PAID_ESCROW
        assert txn.seller_confirmed_delivery is False
        assert txn.buyer_confirmed is False
        assert wallet_of(seller.id).escrow_balance == Decimal("1000")

    def test_unpaid_transaction_cannot_be_confirmed(self, escrow, pending_txn, seller):
        with pytest.raises(InvalidTransitionError):
            escrow.confirm_delivery(pending_txn.id, seller.id)

    def test_cancelled_transaction_cannot_be_confirmed(self, escrow, pending_txn, buyer):
        escrow.cancel_transaction(pending_txn.id, buyer.id)
        with pytest.raises(InvalidTransitionError):
            escrow.confirm_delivery(pending_txn.id, buyer.id)

    def test_completed_transaction_never_releases_twice(self, escrow, paid_txn, buyer, seller, wallet_of):
        escrow.confirm_delivery(paid_txn.id, seller.id)
        escrow.confirm_delivery(paid_txn.id, buyer.id)
        with pytest.raises(InvalidTransitionError):
            escrow.confirm_delivery(paid_txn.id, buyer.id)
        assert wallet_of(seller.id).available_balance == Decimal("900")

    def test_failed_release_rolls_back_everything(self, db, escrow, paid_txn, buyer, seller, wallet_of, monkeypatch):
        escrow.confirm_delivery(paid_txn.id, seller.id)

        def boom(self, user_id, **deltas):
            raise RuntimeError("seller stats unavailable")

        monkeypatch.setattr(LedgerStore, "increment_seller_stats", boom)
        with pytest.raises(RuntimeError):
            escrow.confirm_delivery(paid_txn.id, buyer.id)

        db.expire_all()
        txn = db.get(Transaction, paid_txn.id)
        assert txn.status == TransactionStatus.DELIVERED
        assert txn.buyer_confirmed is False
        wallet = wallet_of(seller.id)
        assert wallet.escrow_balance == Decimal("1000")
        assert wallet.available_balance == Decimal("0")

    def test_stale_concurrent_writer_loses(self, session_factory, escrow, paid_txn, seller):
        other = session_factory()
        try:
            stale = other.get(Transaction, paid_txn.id)
            escrow.confirm_delivery(paid_txn.id, seller.id)

            with pytest.raises(ConcurrentUpdateError):
                with atomic(other):
                    stale.dispute_reason = "written from an outdated read"
        finally:
            other.close()


class TestDisputes:
    def test_dispute_freezes_escrow(self, escrow, paid_txn, buyer, seller, wallet_of, seller_profile_of):
        txn = escrow.raise_dispute(paid_txn.id, buyer.id, "  Item never arrived ")
        assert txn.status == TransactionStatus.DISPUTED
        assert txn.dispute_reason == "Item never arrived"
        assert txn.disputed_at is not None
        assert wallet_of(seller.id).escrow_balance == Decimal("1000")
        assert seller_profile_of(seller.id).disputes_count == 1

    def test_dispute_after_delivery_mark(self, escrow, paid_txn, buyer, seller):
        escrow.confirm_delivery(paid_txn.id, seller.id)
        assert escrow.raise_dispute(paid_txn.id, buyer.id, "Wrong model").status == TransactionStatus.DISPUTED

    def test_dispute_requires_reason(self, escrow, paid_txn, buyer):
        with pytest.raises(ValidationError):
            escrow.raise_dispute(paid_txn.id, buyer.id, "   ")

    def test_dispute_on_unpaid_transaction_rejected(self, escrow, pending_txn, buyer):
        with pytest.raises(InvalidTransitionError):
            escrow.raise_dispute(pending_txn.id, buyer.id, "Too slow")

    def test_outsider_cannot_dispute(self, escrow, paid_txn, make_profile):
        with pytest.raises(NotAuthorizedError):
            escrow.raise_dispute(paid_txn.id, make_profile("outsider").id, "Nosy")

    def test_refund_never_credits_available_balance(self, escrow, paid_txn, buyer, seller, wallet_of):
        escrow.raise_dispute(paid_txn.id, buyer.id, "Broken on arrival")
        txn = escrow.resolve_dispute(paid_txn.id, "refund")

        assert txn.status == TransactionStatus.REFUNDED
        assert txn.refunded_at is not None
        seller_wallet = wallet_of(seller.id)
        assert seller_wallet.escrow_balance == Decimal("0")
        assert seller_wallet.available_balance == Decimal("0")
        assert wallet_of(buyer.id).available_balance == Decimal("0")

    def test_release_matches_normal_completion(
        self, escrow, buyer, seller, listing, wallet_of, seller_profile_of
    ):
        normal = escrow.create_transaction(buyer.id, seller.id, listing.id, "item", 1000)
        escrow.confirm_escrow_payment(normal.id, "QK1", "ws_CO_normal")
        escrow.confirm_delivery(normal.id, seller.id)
        escrow.confirm_delivery(normal.id, buyer.id)
        after_normal = wallet_of(seller.id)
        normal_deltas = (after_normal.available_balance, after_normal.total_earned, after_normal.total_fees_paid)

        disputed = escrow.create_transaction(buyer.id, seller.id, listing.id, "item", 1000)
        escrow.confirm_escrow_payment(disputed.id, "QK2", "ws_CO_disputed")
        escrow.raise_dispute(disputed.id, seller.id, "Buyer unreachable")
        txn = escrow.resolve_dispute(disputed.id, "release")

        assert txn.status == TransactionStatus.COMPLETED
        after_release = wallet_of(seller.id)
        assert after_release.escrow_balance == Decimal("0")
        assert (
            after_release.available_balance - normal_deltas[0],
            after_release.total_earned - normal_deltas[1],
            after_release.total_fees_paid - normal_deltas[2],
        ) == normal_deltas
        assert seller_profile_of(seller.id).completed_orders == 2

    def test_resolve_requires_disputed_status(self, escrow, paid_txn):
        with pytest.raises(InvalidTransitionError):
            escrow.resolve_dispute(paid_txn.id, "release")

    def test_resolution_must_be_known(self, escrow, paid_txn, buyer):
        escrow.raise_dispute(paid_txn.id, buyer.id, "Broken")
        with pytest.raises(ValidationError):
            escrow.resolve_dispute(paid_txn.id, "split")


class TestCancellation:
    def test_either_party_cancels_before_payment(self, escrow, pending_txn, seller, recorder):
        txn = escrow.cancel_transaction(pending_txn.id, seller.id)
        assert txn.status == TransactionStatus.CANCELLED
        assert txn.cancelled_at is not None
        assert recorder.names[-1] == ev.TRANSACTION_CANCELLED

    def test_paid_transaction_cannot_be_cancelled(self, escrow, paid_txn, buyer):
        with pytest.raises(InvalidTransitionError):
            escrow.cancel_transaction(paid_txn.id, buyer.id)

    def test_outsider_cannot_cancel(self, escrow, pending_txn, make_profile):
        with pytest.raises(NotAuthorizedError):
            escrow.cancel_transaction(pending_txn.id, make_profile("outsider").id)


class TestStatusAndRatings:
    def test_status_visible_to_parties_only(self, escrow, paid_txn, buyer, seller, make_profile):
        assert escrow.get_transaction_status(paid_txn.id, buyer.id).status == TransactionStatus.PAID_ESCROW
        assert escrow.get_transaction_status(paid_txn.id, seller.id).mpesa_receipt_number == "QK12ABC345"
        with pytest.raises(NotFoundError):
            escrow.get_transaction_status(paid_txn.id, make_profile("outsider").id)

    def test_buyer_rates_completed_transaction_once(
        self, db, escrow, paid_txn, buyer, seller, seller_profile_of
    ):
        escrow.confirm_delivery(paid_txn.id, seller.id)
        escrow.confirm_delivery(paid_txn.id, buyer.id)

        review = escrow.rate_transaction(paid_txn.id, buyer.id, 4, "Fast handover")
        assert review.rating == 4
        assert paid_txn.is_rated is True
        profile = seller_profile_of(seller.id)
        assert profile.total_ratings == 1
        assert profile.average_rating == pytest.approx(4.0)

        with pytest.raises(InvalidTransitionError):
            escrow.rate_transaction(paid_txn.id, buyer.id, 5)
        assert db.scalar(select(func.count(Review.id))) == 1

    def test_only_buyer_rates_completed(self, escrow, paid_txn, buyer, seller):
        with pytest.raises(InvalidTransitionError):
            escrow.rate_transaction(paid_txn.id, buyer.id, 5)
        escrow.confirm_delivery(paid_txn.id, seller.id)
        escrow.confirm_delivery(paid_txn.id, buyer.id)
        with pytest.raises(NotAuthorizedError):
            escrow.rate_transaction(paid_txn.id, seller.id, 5)

    @pytest.mark.parametrize("rating", [0, 6])
    def test_rating_range(self, escrow, paid_txn, buyer, rating):
        with pytest.raises(ValidationError):
            escrow.rate_transaction(paid_txn.id, buyer.id, rating)


class TestLedgerGuards:
    def test_negative_balance_refused(self, db, paid_txn, seller, wallet_of):
        ledger = LedgerStore(db)
        with pytest.raises(LedgerInvariantError):
            with atomic(db):
                ledger.adjust_wallet(seller.id, escrow_balance=Decimal("-1001"))
        assert wallet_of(seller.id).escrow_balance == Decimal("1000")

    def test_unknown_wallet_field_refused(self, db, seller):
        with pytest.raises(ValueError):
            LedgerStore(db).adjust_wallet(seller.id, bonus_balance=Decimal("1"))
