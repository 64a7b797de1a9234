"""
Event System Module

Publish/subscribe dispatcher for domain events. Notification delivery is an
external concern: the engine only announces what happened, best-effort, after
the originating transaction has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import get_logger


class DomainEvent(Enum):
    """Domain events emitted by the engine"""

    # Contract events
    CONTRACT_CREATED = "contract.created"
    CONTRACT_ACTIVATED = "contract.activated"
    CONTRACT_RENEWED = "contract.renewed"
    CONTRACT_TERMINATED = "contract.terminated"
    CONTRACT_CANCELLED = "contract.cancelled"
    CONTRACT_EXPIRING_SOON = "contract.expiring_soon"
    CONTRACT_EXPIRED = "contract.expired"

    # Charge events
    CHARGE_CREATED = "charge.created"
    CHARGE_CANCELLED = "charge.cancelled"
    CHARGE_OVERDUE = "charge.overdue"

    # Payment events
    PAYMENT_CREATED = "payment.created"
    PAYMENT_APPLIED = "payment.applied"
    PAYMENT_REVERSED = "payment.reversed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_REJECTED = "payment.rejected"

    # Collections events
    DELINQUENCY_OPENED = "delinquency.opened"
    DELINQUENCY_CLOSED = "delinquency.closed"
    DELINQUENCY_FOLLOW_UP = "delinquency.follow_up"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    company_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'company_id': self.company_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = get_logger("lease_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler failures are logged, never raised"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True
                )

    def publish_all(self, events: List[EventPayload]) -> None:
        for event in events:
            self.publish(event)

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class RecordingHandler:
    """Catch-all handler that keeps every published event; handy for tests and debugging"""

    def __init__(self):
        self.events: List[EventPayload] = []

    def __call__(self, event: EventPayload) -> None:
        self.events.append(event)

    def of_type(self, event_type: DomainEvent) -> List[EventPayload]:
        return [e for e in self.events if e.event_type == event_type]


class EventPublisherMixin:
    """
    Mixin for components that announce domain events.

    Events are collected while a transaction runs and published once it has
    committed, so subscribers never hear about rolled-back work.
    """

    event_dispatcher: Optional[EventDispatcher] = None

    def _event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
               company_id: str, data: Dict[str, Any]) -> EventPayload:
        return EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            company_id=company_id,
            data=data
        )

    def _publish(self, events: List[EventPayload]) -> None:
        if self.event_dispatcher is not None and events:
            self.event_dispatcher.publish_all(events)
