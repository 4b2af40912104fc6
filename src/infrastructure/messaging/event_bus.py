"""In-memory event bus implementation."""

import asyncio
from typing import Awaitable, Callable, Dict, List

from src.domain.interfaces import IEventBus
from src.domain.schema import DomainEvent
from src.utils.logger import get_logger

logger = get_logger(__name__)

WILDCARD = "*"


class InMemoryEventBus(IEventBus):
    """Simple in-memory async event bus.

    Handlers registered for ``"*"`` receive every event after the
    type-specific handlers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[[DomainEvent], Awaitable[None]]]] = {}

    async def publish(self, event: DomainEvent) -> None:
        """Publish a single domain event."""
        handlers = self._handlers.get(event.event_type, []) + self._handlers.get(WILDCARD, [])
        if not handlers:
            logger.debug("event_bus.no_handlers", event_type=event.event_type)
            return
        await asyncio.gather(*(handler(event) for handler in handlers))

    async def subscribe(
        self,
        event_type: str,
        handler: Callable[[DomainEvent], Awaitable[None]],
    ) -> None:
        """Subscribe a handler to an event type."""
        self._handlers.setdefault(event_type, []).append(handler)

    async def unsubscribe(
        self,
        event_type: str,
        handler: Callable[[DomainEvent], Awaitable[None]],
    ) -> None:
        """Remove a previously subscribed handler."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
