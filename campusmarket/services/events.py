"""
Domain event emitter.

Services publish an event after each committed state change; subscribers
(the notification component, tests, audit sinks) consume them. Delivery is
best-effort: a failing subscriber is logged and never affects the write
that already committed.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from campusmarket.core.database import utcnow

logger = logging.getLogger(__name__)

WILDCARD = "*"

TRANSACTION_CREATED = "transaction.created"
TRANSACTION_PAID = "transaction.paid"
TRANSACTION_DELIVERED = "transaction.delivered"
TRANSACTION_COMPLETED = "transaction.completed"
TRANSACTION_DISPUTED = "transaction.disputed"
TRANSACTION_REFUNDED = "transaction.refunded"
TRANSACTION_CANCELLED = "transaction.cancelled"
REFERRAL_CREDITED = "referral.credited"
WITHDRAWAL_REQUESTED = "withdrawal.requested"
WITHDRAWAL_COMPLETED = "withdrawal.completed"
WITHDRAWAL_REJECTED = "withdrawal.rejected"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    recipients: tuple[str, ...]
    transaction_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """In-process callback registry keyed by event name ("*" receives all)."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._subscribers[name].append(handler)

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        if handler in self._subscribers.get(name, []):
            self._subscribers[name].remove(handler)

    def publish(self, event: DomainEvent) -> None:
        handlers = self._subscribers.get(event.name, []) + self._subscribers.get(WILDCARD, [])
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("[EVENTS] Subscriber %r failed for %s", handler, event.name)

    def publish_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.publish(event)


def log_notification(event: DomainEvent) -> None:
    """Default subscriber: record the notification that would be sent."""
    logger.info(
        "[NOTIFY] %s -> %s (transaction=%s)",
        event.name,
        ", ".join(r for r in event.recipients if r),
        event.transaction_id,
    )


event_bus = EventBus()
event_bus.subscribe(WILDCARD, log_notification)


def get_event_bus() -> EventBus:
    """FastAPI dependency returning the process-wide bus."""
    return event_bus
