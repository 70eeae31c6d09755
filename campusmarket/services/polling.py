"""
Client-side payment confirmation polling.

After an STK push the caller polls the transaction status at a fixed
interval for a fixed number of attempts. Running out of attempts is
reported as TIMED_OUT, never as a failure: the callback may still arrive
and complete the payment later.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from campusmarket.core.config import get_settings
from campusmarket.models.enums import TransactionStatus

logger = logging.getLogger(__name__)
settings = get_settings()

PAID_STATUSES = {
    TransactionStatus.PAID_ESCROW,
    TransactionStatus.DELIVERED,
    TransactionStatus.COMPLETED,
    TransactionStatus.DISPUTED,
}
FAILED_STATUSES = {TransactionStatus.CANCELLED, TransactionStatus.REFUNDED}


class PollOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def poll_payment_status(
    read_status: Callable[[], TransactionStatus],
    interval_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PollOutcome:
    """
    Poll `read_status` until the payment lands, is abandoned, or attempts run out.

    Args:
        read_status: Pure status read, e.g. lambda: service.get_transaction_status(tid, uid).status
        interval_seconds: Delay between reads (default PAYMENT_POLL_INTERVAL_SECONDS)
        max_attempts: Number of reads (default PAYMENT_POLL_MAX_ATTEMPTS)
        cancel_event: Set it to stop polling early
        sleep: Injected for tests when no cancel_event is given
    """
    interval = settings.PAYMENT_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
    attempts = settings.PAYMENT_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts

    for attempt in range(1, attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            return PollOutcome.CANCELLED

        status = TransactionStatus(read_status())
        if status in PAID_STATUSES:
            return PollOutcome.PAID
        if status in FAILED_STATUSES:
            return PollOutcome.FAILED

        if attempt < attempts:
            if cancel_event is not None:
                if cancel_event.wait(interval):
                    return PollOutcome.CANCELLED
            else:
                sleep(interval)

    logger.info("Payment confirmation still pending after %d checks", attempts)
    return PollOutcome.TIMED_OUT
