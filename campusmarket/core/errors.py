"""
Domain error taxonomy.

Every error carries a user-facing message and the HTTP status the API
layer renders it with.
"""


class CampusMarketError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code: int = 400
    default_message: str = "Request could not be processed"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CampusMarketError):
    default_message = "Invalid request"


class AuthenticationError(CampusMarketError):
    status_code = 401
    default_message = "Unauthorized"


class SelfTradeError(CampusMarketError):
    default_message = "You cannot purchase your own listing"


class SelfReferralError(CampusMarketError):
    default_message = "You cannot use your own referral code"


class AlreadyReferredError(CampusMarketError):
    default_message = "You have already used a referral code"


class InvalidCodeError(CampusMarketError):
    default_message = "Invalid referral code"


class NotAuthorizedError(CampusMarketError):
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(CampusMarketError):
    status_code = 404
    default_message = "Not found"


class InvalidTransitionError(CampusMarketError):
    status_code = 409
    default_message = "This action is not allowed in the current state"


class LedgerInvariantError(CampusMarketError):
    status_code = 409
    default_message = "Wallet balance would become negative"


class ConcurrentUpdateError(CampusMarketError):
    status_code = 409
    default_message = "The record was modified concurrently, please retry"


class InsufficientBalanceError(CampusMarketError):
    status_code = 402
    default_message = "Insufficient available balance"


class GatewayAuthError(CampusMarketError):
    status_code = 502
    default_message = "Failed to authenticate with payment provider"


class GatewayRejected(CampusMarketError):
    status_code = 502
    default_message = "Failed to initiate payment"
