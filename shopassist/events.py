"""Explicit publish/subscribe for side effects of the core.

Components receive an EventBus from the composition root instead of
firing hooks on a global bus.
"""
from collections import defaultdict
from typing import Any, Callable, Dict, List
import structlog

logger = structlog.get_logger()

USAGE_TRACKED = "usage_tracked"
CONTENT_INDEXED = "content_indexed"
RESPONSE_GENERATED = "response_generated"

EventHandler = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """Synchronous in-process event dispatcher."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Register a handler for an event name."""
        self._handlers[event].append(handler)
        logger.debug("event_handler_subscribed", event_name=event)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def publish(self, event: str, **payload: Any) -> int:
        """Deliver an event to its handlers.

        A failing handler is logged and skipped; the publisher is never
        affected.

        Returns:
            Number of handlers that ran without raising
        """
        delivered = 0
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(event, payload)
                delivered += 1
            except Exception as e:
                logger.exception(
                    "event_handler_failed",
                    event_name=event,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )
        return delivered
