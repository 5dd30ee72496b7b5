"""
Event System Module

In-process publish/subscribe dispatcher. Lending commands publish domain
events after their transaction commits; notification delivery, dashboards and
other collaborators subscribe here instead of being called directly.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the lending engine"""

    # Member events
    MEMBER_CREATED = "member.created"
    MEMBER_STATUS_CHANGED = "member.status_changed"

    # Loan events
    LOAN_CREATED = "loan.created"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_PAYMENT_RECORDED = "loan.payment_recorded"
    LOAN_REPAID = "loan.repaid"
    LOAN_DEFAULTED = "loan.defaulted"
    LOAN_WRITTEN_OFF = "loan.written_off"
    LOAN_OVERPAYMENT_FLAGGED = "loan.overpayment_flagged"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


Handler = Callable[[EventPayload], None]


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("lending.events")

    def subscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler failures never propagate"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}: {e}"
                )

    def emit(self, event_type: DomainEvent, entity_type: str, entity_id: str,
             data: Optional[Dict[str, Any]] = None) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data or {}
        )
        self.publish(event)
        return event

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
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


def loan_event_data(loan) -> Dict[str, Any]:
    """Common event fields for a loan"""
    return {
        "member_id": loan.member_id,
        "program": loan.program.value,
        "status": loan.status.value,
        "approval_status": loan.approval_status.value,
        "principal_amount": str(loan.principal_amount.amount),
        "current_balance": str(loan.current_balance.amount),
        "total_paid": str(loan.total_paid.amount),
        "currency": loan.currency.code,
        "branch_id": loan.branch_id,
        "officer_id": loan.officer_id,
    }
