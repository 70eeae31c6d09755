# API Routes
from campusmarket.api.health import router as health_router
from campusmarket.api.transactions import router as transactions_router
from campusmarket.api.payments import router as payments_router
from campusmarket.api.referrals import router as referrals_router
from campusmarket.api.wallets import router as wallets_router
from campusmarket.api.admin import router as admin_router

__all__ = [
    "health_router",
    "transactions_router",
    "payments_router",
    "referrals_router",
    "wallets_router",
    "admin_router",
]
