"""In-process event bus for signals consumed by notification/feed collaborators."""

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DAILY_AGGREGATE_READY = "daily_aggregate_ready"
REAUTHORIZATION_REQUIRED = "reauthorization_required"
SYNC_HALTED = "sync_halted"

EventHandler = Callable[..., Awaitable[None]]


class EventBus:
    """Fan an event out to async subscribers.

    A failing handler is logged and skipped; it never propagates into the
    sync or recap code that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(name, []):
            self._handlers[name].remove(handler)

    async def emit(self, name: str, **payload: Any) -> None:
        handlers = list(self._handlers.get(name, []))
        logger.debug("Emitting %s to %d handler(s)", name, len(handlers))
        for handler in handlers:
            try:
                await handler(**payload)
            except Exception:
                logger.exception("Event handler for %s failed", name)
