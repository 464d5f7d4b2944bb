"""
Change notifications for balance and batch updates.

Services emit an event after the mutation it describes has committed:

    await self.events.emit(EventType.BALANCE_CHANGED, {"affiliate_id": str(affiliate_id)})

Collaborators (dashboards, notification senders) subscribe instead of
polling the engine. A failing subscriber is logged and never affects the
mutation that produced the event.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    BALANCE_CHANGED = "balance-changed"
    BATCH_STATUS_CHANGED = "batch-status-changed"


@dataclass
class Event:
    """An event delivered to subscribers."""
    type: EventType
    data: Dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


EventHandler = Callable[[Event], Any]


class EventBus:
    """Simple in-process pub/sub."""

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Handler subscribed to {event_type.value}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    def clear(self) -> None:
        self._handlers.clear()

    async def emit(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Deliver an event to every subscriber of its type."""
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return

        event = Event(type=event_type, data=data)
        tasks = []
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    tasks.append(result)
            except Exception:
                logger.exception(f"Event handler failed for {event_type.value}")

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Event handler failed for {event_type.value}: {result}")


# Process-wide bus used when a service is not given one explicitly
event_bus = EventBus()
