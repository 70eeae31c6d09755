"""
Scheduled escrow sweeps.

- Auto-release: complete escrows whose auto_release_at deadline has passed,
  protecting sellers from buyers who never confirm.
- Pending payment expiry: cancel checkouts that were never paid.

Each transaction is settled in its own unit of work; one failure is logged
and the sweep moves on.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from campusmarket.core.config import get_settings
from campusmarket.core.database import SessionLocal, utcnow
from campusmarket.core.errors import CampusMarketError
from campusmarket.services.escrow import EscrowService

logger = logging.getLogger(__name__)
settings = get_settings()


def release_overdue(db: Session, now: Optional[datetime] = None) -> int:
    """Release every overdue escrow. Returns the number released."""
    now = now or utcnow()
    service = EscrowService(db)
    due = service.due_for_auto_release(now)

    released = 0
    for transaction_id in due:
        try:
            if service.auto_release(transaction_id, now):
                released += 1
        except CampusMarketError as e:
            logger.warning("[AUTO-RELEASE] Skipped %s: %s", transaction_id, e.message)
        except Exception:
            logger.exception("[AUTO-RELEASE] Failed to release %s", transaction_id)

    if due:
        logger.info("[AUTO-RELEASE] Released %d of %d overdue escrows", released, len(due))
    return released


def expire_stale_payments(db: Session, now: Optional[datetime] = None) -> int:
    """Cancel checkouts left unpaid past PENDING_PAYMENT_EXPIRY_HOURS. Returns the number cancelled."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.PENDING_PAYMENT_EXPIRY_HOURS)
    service = EscrowService(db)

    expired = 0
    for transaction_id in service.stale_pending_payments(cutoff):
        try:
            if service.expire_pending_payment(transaction_id, cutoff):
                expired += 1
        except Exception:
            logger.exception("[AUTO-RELEASE] Failed to expire %s", transaction_id)
    return expired


def run_auto_release_sweep(
    session_factory: Callable[[], Session] = SessionLocal,
    now: Optional[datetime] = None,
) -> int:
    db = session_factory()
    try:
        return release_overdue(db, now)
    finally:
        db.close()


def run_pending_payment_expiry(
    session_factory: Callable[[], Session] = SessionLocal,
    now: Optional[datetime] = None,
) -> int:
    db = session_factory()
    try:
        return expire_stale_payments(db, now)
    finally:
        db.close()


def start_scheduler() -> Optional[BackgroundScheduler]:
    """Start the background sweeps, or return None when disabled."""
    if not settings.SCHEDULER_ENABLED:
        return None

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_auto_release_sweep,
        "interval",
        minutes=settings.AUTO_RELEASE_SWEEP_MINUTES,
        id="escrow_auto_release",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_pending_payment_expiry,
        "interval",
        hours=1,
        id="pending_payment_expiry",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("[AUTO-RELEASE] Scheduler started (every %d min)", settings.AUTO_RELEASE_SWEEP_MINUTES)
    return scheduler
