"""
Payment Gateway Adapter.

Bridges the escrow state machine and M-Pesa:
  - initiate_charge: validate the payer phone, push an STK charge and record
    the returned CheckoutRequestID (our correlation id) as a charge attempt.
    Retries keep earlier attempts, so a late payment on an old prompt still
    finds its transaction.
  - handle_callback: ingest Safaricom's asynchronous result. The raw payload
    is stored before anything is applied, Safaricom always gets an
    acknowledgement, and duplicate deliveries are harmless. Callbacks that
    did not arrive on the secret callback URL are stored but never applied.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from campusmarket.core.config import get_settings
from campusmarket.core.database import atomic, utcnow
from campusmarket.core.errors import (
    InvalidTransitionError,
    NotAuthorizedError,
    ValidationError,
)
from campusmarket.models.charge_attempt import ChargeAttempt
from campusmarket.models.enums import ChargeStatus, PaymentMethod, TransactionStatus
from campusmarket.models.mpesa_callback import MpesaCallback
from campusmarket.services.escrow import EscrowService, parse_amount
from campusmarket.services.events import EventBus, event_bus
from campusmarket.services.ledger import LedgerStore
from campusmarket.services.mpesa_client import MpesaDarajaClient

logger = logging.getLogger(__name__)
settings = get_settings()

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
MIN_SIGNIFICANT_DIGITS = 9
MAX_PHONE_DIGITS = 15


def normalize_phone(raw: Optional[str], country_code: Optional[str] = None) -> str:
    """
    Normalize a phone number to the country-code-prefixed numeric form
    M-Pesa expects, e.g. "0712 345 678" -> "254712345678".
    """
    country_code = country_code or settings.MPESA_COUNTRY_CODE
    digits = re.sub(r"[\s\-()]", "", raw or "")
    if digits.startswith("+"):
        digits = digits[1:]
    if not digits or not digits.isdigit():
        raise ValidationError("Phone number must contain digits only")

    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif not digits.startswith(country_code):
        digits = country_code + digits

    if len(digits) - len(country_code) < MIN_SIGNIFICANT_DIGITS:
        raise ValidationError("Phone number is too short")
    if len(digits) > MAX_PHONE_DIGITS:
        raise ValidationError("Phone number is too long")
    return digits


def verify_callback_source(token: Optional[str], client_host: Optional[str]) -> bool:
    """
    Daraja does not sign callbacks, so the result URL carries a secret token
    (MPESA_CALLBACK_TOKEN) and, optionally, the sender must be a listed
    Safaricom address.
    """
    expected = settings.MPESA_CALLBACK_TOKEN
    if not expected:
        logger.error("[MPESA] MPESA_CALLBACK_TOKEN is not set; callbacks cannot be verified")
        return False
    if not secrets.compare_digest((token or "").encode("utf-8"), expected.encode("utf-8")):
        logger.warning("[MPESA] Callback with a bad token from %s", client_host)
        return False
    allowed = settings.MPESA_CALLBACK_ALLOWED_IPS
    if allowed and client_host not in allowed:
        logger.warning("[MPESA] Callback from unlisted address %s", client_host)
        return False
    return True


@dataclass(frozen=True)
class CallbackResult:
    """Fields extracted from an stkCallback payload."""
    checkout_request_id: Optional[str]
    merchant_request_id: Optional[str]
    result_code: Optional[int]
    result_desc: Optional[str]
    amount: Optional[Decimal] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0 and bool(self.receipt_number)


def parse_callback(payload: Any) -> CallbackResult:
    """
    Extract the result from Safaricom's callback body:
        {"Body": {"stkCallback": {"CheckoutRequestID": ..., "ResultCode": 0,
            "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1000}, ...]}}}}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Callback payload must be a JSON object")
    stk = (payload.get("Body") or {}).get("stkCallback")
    if not isinstance(stk, dict):
        raise ValidationError("Invalid callback structure")

    try:
        result_code = int(stk["ResultCode"]) if stk.get("ResultCode") is not None else None
    except (TypeError, ValueError):
        result_code = None

    metadata: dict[str, Any] = {}
    if result_code == 0:
        items = (stk.get("CallbackMetadata") or {}).get("Item") or []
        for item in items:
            if isinstance(item, dict) and "Name" in item:
                metadata[item["Name"]] = item.get("Value")

    amount = None
    if metadata.get("Amount") is not None:
        try:
            amount = Decimal(str(metadata["Amount"]))
        except InvalidOperation:
            logger.warning("[MPESA] Unparseable callback amount: %r", metadata["Amount"])

    def _text(value: Any) -> Optional[str]:
        return None if value is None else str(value)

    return CallbackResult(
        checkout_request_id=_text(stk.get("CheckoutRequestID")),
        merchant_request_id=_text(stk.get("MerchantRequestID")),
        result_code=result_code,
        result_desc=_text(stk.get("ResultDesc")),
        amount=amount,
        receipt_number=_text(metadata.get("MpesaReceiptNumber")),
        transaction_date=_text(metadata.get("TransactionDate")),
        phone_number=_text(metadata.get("PhoneNumber")),
    )


@dataclass(frozen=True)
class ChargeResult:
    transaction_id: str
    checkout_request_id: str
    merchant_request_id: Optional[str]
    message: str = "Please check your phone for the M-Pesa prompt"


class PaymentGateway:
    """M-Pesa adapter around the escrow service."""

    def __init__(
        self,
        db: Session,
        client: Optional[MpesaDarajaClient] = None,
        events: Optional[EventBus] = None,
    ):
        self.db = db
        self.client = client or MpesaDarajaClient()
        self.events = events or event_bus
        self.ledger = LedgerStore(db)

    # ─── Charge initiation ──────────────────────────────────────

    def initiate_charge(
        self,
        transaction_id: str,
        acting_user_id: str,
        phone_number: str,
        amount=None,
    ) -> ChargeResult:
        """
        Push an STK charge for a pending transaction.
        Gateway failures propagate and leave the transaction in pending_payment.
        """
        phone = normalize_phone(phone_number)

        txn = self.ledger.get_transaction(transaction_id)
        if acting_user_id != txn.buyer_id:
            raise NotAuthorizedError("Only the buyer can pay for this transaction")
        if txn.status != TransactionStatus.PENDING_PAYMENT:
            raise InvalidTransitionError(f"Transaction is already {txn.status.value}")
        if amount is not None and parse_amount(amount) != txn.amount:
            raise ValidationError("Amount does not match the transaction")

        previous = self.ledger.latest_charge_attempt(transaction_id)
        if previous is not None and previous.status == ChargeStatus.PENDING:
            retry_after = previous.created_at + timedelta(seconds=settings.MPESA_CHARGE_RETRY_SECONDS)
            if utcnow() < retry_after:
                raise InvalidTransitionError(
                    "A payment prompt was just sent; answer it on your phone or retry shortly"
                )

        charge_amount = txn.amount
        reference = transaction_id[: settings.MPESA_REFERENCE_MAX_LENGTH]
        self.db.rollback()  # hold no transaction open across the HTTP call

        response = self.client.initiate_charge(charge_amount, phone, reference)
        checkout_request_id = response.get("CheckoutRequestID")
        if not checkout_request_id:
            raise ValidationError("Payment provider returned no checkout id")

        with atomic(self.db):
            # The prompt is live on the payer's phone; keep its id even if the
            # transaction moved on, so a late callback still resolves
            self.db.add(ChargeAttempt(
                transaction_id=transaction_id,
                checkout_request_id=checkout_request_id,
                merchant_request_id=response.get("MerchantRequestID"),
                phone_number=phone,
                status=ChargeStatus.PENDING,
            ))
            txn = self.ledger.get_transaction(transaction_id, lock=True)
            if txn.status == TransactionStatus.PENDING_PAYMENT:
                txn.mpesa_checkout_request_id = checkout_request_id
                txn.payment_method = PaymentMethod.MPESA

        if txn.status != TransactionStatus.PENDING_PAYMENT:
            logger.warning(
                "[MPESA] %s left pending_payment while charge %s was being pushed",
                transaction_id, checkout_request_id,
            )
            raise InvalidTransitionError(f"Transaction is already {txn.status.value}")
        logger.info("[MPESA] STK push %s sent for %s", checkout_request_id, transaction_id)

        return ChargeResult(
            transaction_id=transaction_id,
            checkout_request_id=checkout_request_id,
            merchant_request_id=response.get("MerchantRequestID"),
        )

    # ─── Callback ingestion ─────────────────────────────────────

    def handle_callback(self, raw_payload: Any, verified: bool = True) -> dict:
        """
        Ingest a result callback. Never raises: Safaricom retries delivery
        unless acknowledged, so failures are logged and the stored raw row
        remains for reconciliation.

        Every body is stored, including unparseable ones. Only verified
        callbacks (see verify_callback_source) are applied to the ledger.
        """
        try:
            result = parse_callback(raw_payload)
        except ValidationError as e:
            logger.error("[MPESA] Rejected callback payload: %s", e.message)
            result = None

        checkout_id = result.checkout_request_id if result is not None else None
        try:
            self._store(result, raw_payload, verified)
        except Exception:
            logger.exception("[MPESA] Failed to store callback for %s", checkout_id)

        if result is None:
            return CALLBACK_ACK
        if not verified:
            logger.warning("[MPESA] Unverified callback for %s stored, not applied", checkout_id)
            return CALLBACK_ACK

        try:
            self._apply(result)
        except Exception:
            self.db.rollback()
            logger.exception("[MPESA] Failed to apply callback for %s", checkout_id)

        return CALLBACK_ACK

    def reprocess_unprocessed_callbacks(self) -> int:
        """Re-apply stored successful callbacks that never reached the ledger."""
        rows = self.db.scalars(
            select(MpesaCallback)
            .where(
                MpesaCallback.processed.is_(False),
                MpesaCallback.verified.is_(True),
                MpesaCallback.result_code == 0,
                MpesaCallback.mpesa_receipt_number.is_not(None),
            )
            .order_by(MpesaCallback.created_at)
        ).all()
        results = [
            CallbackResult(
                checkout_request_id=row.checkout_request_id,
                merchant_request_id=row.merchant_request_id,
                result_code=row.result_code,
                result_desc=row.result_desc,
                amount=row.amount,
                receipt_number=row.mpesa_receipt_number,
                transaction_date=row.transaction_date,
                phone_number=row.phone_number,
            )
            for row in rows
        ]

        applied = 0
        for result in results:
            try:
                if self._apply(result):
                    applied += 1
            except Exception:
                self.db.rollback()
                logger.exception("[MPESA] Reprocessing failed for %s", result.checkout_request_id)
        logger.info("[MPESA] Reprocessed %d of %d stored callbacks", applied, len(results))
        return applied

    def _store(self, result: Optional[CallbackResult], raw_payload: Any, verified: bool) -> None:
        if result is None:
            row = MpesaCallback(raw_callback=raw_payload, verified=verified, processed=False)
        else:
            row = MpesaCallback(
                checkout_request_id=result.checkout_request_id,
                merchant_request_id=result.merchant_request_id,
                result_code=result.result_code,
                result_desc=result.result_desc,
                amount=result.amount,
                mpesa_receipt_number=result.receipt_number,
                transaction_date=result.transaction_date,
                phone_number=result.phone_number,
                raw_callback=raw_payload,
                verified=verified,
                processed=False,
            )
        with atomic(self.db):
            self.db.add(row)

    def _apply(self, result: CallbackResult) -> bool:
        """Apply a successful payment to its transaction. Returns True once the ledger reflects it."""
        if not result.succeeded:
            logger.info(
                "[MPESA] Charge %s not completed (code=%s): %s",
                result.checkout_request_id, result.result_code, result.result_desc,
            )
            if result.checkout_request_id:
                with atomic(self.db):
                    self.ledger.set_charge_status(result.checkout_request_id, ChargeStatus.FAILED, result.result_desc)
            return False

        if not result.checkout_request_id:
            logger.error("[MPESA] Successful callback %s carries no checkout id", result.receipt_number)
            return False

        txn = self.ledger.find_transaction_by_checkout(result.checkout_request_id, lock=False)
        if txn is None:
            logger.error("[MPESA] Transaction not found for checkout %s", result.checkout_request_id)
            return False

        if result.amount is not None and result.amount != txn.amount:
            logger.error(
                "[MPESA] Amount mismatch for %s: paid %s, expected %s",
                txn.id, result.amount, txn.amount,
            )
            return False

        transaction_id = txn.id
        applied = EscrowService(self.db, self.events).confirm_escrow_payment(
            transaction_id, result.receipt_number, result.checkout_request_id
        )
        if not applied:
            logger.info("[MPESA] Callback for %s already applied", transaction_id)

        with atomic(self.db):
            self.ledger.set_charge_status(result.checkout_request_id, ChargeStatus.SUCCEEDED, result.result_desc)
            self.db.execute(
                update(MpesaCallback)
                .where(
                    MpesaCallback.checkout_request_id == result.checkout_request_id,
                    MpesaCallback.verified.is_(True),
                )
                .values(processed=True),
                execution_options={"synchronize_session": False},
            )
        logger.info("[MPESA] Payment processed for transaction %s", transaction_id)
        return True
