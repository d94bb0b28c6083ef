"""Domain events and an in-process emitter.

Services emit events only after their transaction has committed. Handlers
are isolated: a failing handler is logged and does not stop the others or
the operation that emitted the event.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, TypeVar
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PROJECT = "project"
    REQUEST = "request"
    HOURS = "hours"


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    """Base class for all domain events."""

    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    actor_id: UUID | None = None
    actor_name: str | None = None

    category = EventCategory.REQUEST

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Serialize for notification payloads."""
        data: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if isinstance(value, (UUID, Decimal)):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[key] = value
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data


@dataclass(frozen=True, kw_only=True)
class RequestStatusChanged(DomainEvent):
    request_id: UUID
    from_status: str
    to_status: str
    allocated_hours: Decimal


@dataclass(frozen=True, kw_only=True)
class EngineerAssigned(DomainEvent):
    request_id: UUID
    project_id: UUID | None
    engineer_id: UUID | None
    engineer_name: str
    estimated_hours: Decimal
    hours_delta: Decimal

    category = EventCategory.HOURS


@dataclass(frozen=True, kw_only=True)
class DiscussionReviewed(DomainEvent):
    discussion_request_id: UUID
    request_id: UUID
    action: str
    final_hours: Decimal | None


@dataclass(frozen=True, kw_only=True)
class ProjectStatusChanged(DomainEvent):
    project_id: UUID
    from_status: str
    to_status: str
    reason: str | None = None

    category = EventCategory.PROJECT


@dataclass(frozen=True, kw_only=True)
class ProjectHoursChanged(DomainEvent):
    """Budget extension, manual adjustment or request reassignment."""

    project_id: UUID
    transaction_type: str
    hours: Decimal
    total_hours: Decimal
    used_hours: Decimal

    category = EventCategory.HOURS


E = TypeVar("E", bound=DomainEvent)
EventHandler = Callable[[DomainEvent], None]


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories


class EventEmitter:
    """Synchronous event emitter.

    Usage:
        emitter = EventEmitter()
        emitter.on(RequestStatusChanged, notify_requester)
        emitter.on_category(EventCategory.HOURS, refresh_dashboard)
        emitter.emit(event)
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(self, event_type: type[E] | list[type[E]], handler: EventHandler) -> None:
        """Register handler for specific event type(s)."""
        if isinstance(event_type, list):
            types = {t.__name__ for t in event_type}
        else:
            types = {event_type.__name__}
        self._handlers.append(HandlerRegistration(handler, types, None))

    def on_category(
        self, category: EventCategory | list[EventCategory], handler: EventHandler
    ) -> None:
        """Register handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(HandlerRegistration(handler, None, cats))

    def on_all(self, handler: EventHandler) -> None:
        """Register handler for all events."""
        self._handlers.append(HandlerRegistration(handler, None, None))

    def off(self, handler: EventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        """
        errors: list[Exception] = []
        event_type = event.event_type

        for reg in self._handlers:
            if reg.event_types and event_type not in reg.event_types:
                continue
            if reg.categories and event.category not in reg.categories:
                continue

            try:
                reg.handler(event)
            except Exception as e:
                logger.exception("Handler %s failed for event %s", reg.handler, event_type)
                errors.append(e)

        return errors

    def emit_all(self, events: list[DomainEvent]) -> list[Exception]:
        """Emit events collected during a committed unit of work."""
        errors: list[Exception] = []
        for event in events:
            errors.extend(self.emit(event))
        return errors
