"""
Domain events

In-process publish/subscribe for things other components react to:
notifications, activities and chat messages reach their live consumers
through the dispatcher, and money movements are announced the same way.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

EventHandler = Callable[['EventPayload'], None]

logger = logging.getLogger("avenir.events")


class DomainEvent(Enum):
    """Domain events that can occur in the bank"""

    # Users and accounts
    USER_REGISTERED = "user.registered"
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_CLOSED = "account.closed"

    # Money movement
    DEPOSIT_COMPLETED = "deposit.completed"
    WITHDRAWAL_COMPLETED = "withdrawal.completed"
    TRANSFER_COMPLETED = "transfer.completed"
    INTEREST_CAPITALIZED = "interest.capitalized"

    # Savings and credits
    SAVINGS_RATE_CHANGED = "savings.rate_changed"
    CREDIT_CREATED = "credit.created"
    CREDIT_COMPLETED = "credit.completed"

    # Investments
    ORDER_PLACED = "order.placed"
    TRADE_EXECUTED = "trade.executed"

    # Communication
    NOTIFICATION_CREATED = "notification.created"
    ACTIVITY_CREATED = "activity.created"
    MESSAGE_SENT = "message.sent"


@dataclass
class EventPayload:
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def resource(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form, as sent to push consumers"""
        return {
            'event_id': self.event_id,
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'timestamp': self.timestamp.isoformat(),
            'data': self.data,
        }


def _describe(handler: EventHandler) -> str:
    return getattr(handler, '__qualname__', None) or repr(handler)


class EventDispatcher:
    """
    Synchronous dispatcher

    Handlers run in the publisher's thread, type-specific ones first, then
    the ones registered for every event. A failing handler is logged and
    the remaining handlers still run.
    """

    # Subscription key for handlers that receive every event
    ALL = None

    def __init__(self):
        self._subscriptions: Dict[Optional[DomainEvent], List[EventHandler]] = {}
        self._lock = RLock()

    def _add(self, key: Optional[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            self._subscriptions.setdefault(key, []).append(handler)
        logger.debug(f"Subscribed {_describe(handler)} to {key.value if key else 'all events'}")

    def _remove(self, key: Optional[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscriptions.get(key, [])
            if handler in handlers:
                handlers.remove(handler)
                return
        logger.warning(f"{_describe(handler)} is not subscribed to {key.value if key else 'all events'}")

    def subscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        self._add(event_type, handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._add(self.ALL, handler)

    def unsubscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        self._remove(event_type, handler)

    def unsubscribe_all(self, handler: EventHandler) -> None:
        self._remove(self.ALL, handler)

    def handlers_for(self, event_type: DomainEvent) -> List[EventHandler]:
        """Snapshot of the handlers an event of this type reaches"""
        with self._lock:
            return (list(self._subscriptions.get(event_type, [])) +
                    list(self._subscriptions.get(self.ALL, [])))

    def publish(self, event: EventPayload) -> None:
        handlers = self.handlers_for(event.event_type)
        logger.debug(f"{event.event_type.value} on {event.resource} to {len(handlers)} handler(s)")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"{_describe(handler)} failed on {event.event_type.value}: {e}",
                             exc_info=True)

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Handlers for one event type (global ones excluded), or all handlers"""
        with self._lock:
            if event_type is not None:
                return len(self._subscriptions.get(event_type, []))
            return sum(len(handlers) for handlers in self._subscriptions.values())


class EventPublisherMixin:
    """Gives a manager publish_event(); a no-op until a dispatcher is attached"""

    event_dispatcher: Optional[EventDispatcher] = None

    def publish_event(self, event_type: DomainEvent, entity_type: str,
                      entity_id: str, data: Dict[str, Any]) -> None:
        if self.event_dispatcher is not None:
            self.event_dispatcher.publish(EventPayload(event_type, entity_type, entity_id, data))
