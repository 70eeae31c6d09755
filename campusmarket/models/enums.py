"""Enumerations shared by the ledger models."""

import enum


def enum_values(enum_cls) -> list[str]:
    """Persist enum values (not member names) in string columns."""
    return [member.value for member in enum_cls]


class ListingType(str, enum.Enum):
    ITEM = "item"
    SERVICE = "service"


class PaymentMethod(str, enum.Enum):
    MPESA = "mpesa"
    CARD = "card"


class TransactionStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID_ESCROW = "paid_escrow"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# Funds for these states sit in the seller's escrow balance
ESCROW_HELD_STATUSES = (
    TransactionStatus.PAID_ESCROW,
    TransactionStatus.DELIVERED,
    TransactionStatus.DISPUTED,
)


class DisputeResolution(str, enum.Enum):
    REFUND = "refund"
    RELEASE = "release"


class SellerTier(str, enum.Enum):
    FREE = "free"
    PREMIUM = "premium"
    TRUSTED = "trusted"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ReferralStatus(str, enum.Enum):
    PENDING = "pending"
    CREDITED = "credited"


class ChargeStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
