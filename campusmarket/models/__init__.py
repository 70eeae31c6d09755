# ORM models; importing this package registers every table on Base.metadata
from campusmarket.models.profile import Profile
from campusmarket.models.listing import Listing
from campusmarket.models.transaction import Transaction
from campusmarket.models.wallet import Wallet
from campusmarket.models.seller_profile import SellerProfile
from campusmarket.models.withdrawal import Withdrawal
from campusmarket.models.referral import Referral
from campusmarket.models.mpesa_callback import MpesaCallback
from campusmarket.models.review import Review
from campusmarket.models.charge_attempt import ChargeAttempt

__all__ = [
    "Profile",
    "Listing",
    "Transaction",
    "Wallet",
    "SellerProfile",
    "Withdrawal",
    "Referral",
    "MpesaCallback",
    "Review",
    "ChargeAttempt",
]
