"""Exhaustive dispatch of inbound host messages."""

from typing import Any, Awaitable, Callable, Dict, Mapping, Type

from src.domain.messages import INBOUND_TYPES, parse_inbound
from src.domain.schema import WireModel
from src.utils.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class DispatcherCoverageError(TypeError):
    """Raised when a dispatcher is built without a handler for every inbound type."""
    pass


class MessageDispatcher:
    """Routes each inbound message to exactly one handler.

    Construction fails unless every inbound message type has a handler, so a
    new message type cannot be silently dropped.
    """

    def __init__(self, handlers: Mapping[Type[WireModel], Handler]):
        missing = [cls.__name__ for cls in INBOUND_TYPES if cls not in handlers]
        if missing:
            raise DispatcherCoverageError(f"No handler for inbound message types: {', '.join(missing)}")
        unknown = [cls.__name__ for cls in handlers if cls not in INBOUND_TYPES]
        if unknown:
            raise DispatcherCoverageError(f"Handlers registered for unknown types: {', '.join(unknown)}")
        self._handlers: Dict[Type[WireModel], Handler] = dict(handlers)

    async def dispatch(self, message: WireModel) -> None:
        handler = self._handlers[type(message)]
        logger.debug("dispatcher.message", type=getattr(message, "type", type(message).__name__))
        await handler(message)

    async def dispatch_raw(self, payload: Dict[str, Any]) -> WireModel:
        """Validate a raw envelope and dispatch it.

        Raises:
            pydantic.ValidationError: If the payload is not a known inbound message.
        """
        message = parse_inbound(payload)
        await self.dispatch(message)
        return message
