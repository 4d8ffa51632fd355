"""
Event Emitter

Minimal named-event pub/sub used by the connection manager, the AI
pipeline and the session controller to publish status, transcript and
AI update events to the presentation layer.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventHandler:
    """Wrapper for event handler functions."""

    def __init__(self, handler: Callable[[Any], Any], once: bool = False):
        self.handler = handler
        self.once = once
        self.invocation_count = 0

    async def handle(self, payload: Any) -> None:
        """Handle an event."""
        self.invocation_count += 1

        if asyncio.iscoroutinefunction(self.handler):
            await self.handler(payload)
        else:
            result = self.handler(payload)
            if asyncio.iscoroutine(result):
                await result


class EventEmitter:
    """
    Named event emitter.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: Callable[[Any], Any]) -> Callable[[Any], Any]:
        """Subscribe to an event. Returns the handler for use with off()."""
        self._handlers[event].append(EventHandler(handler))
        return handler

    def once(self, event: str, handler: Callable[[Any], Any]) -> Callable[[Any], Any]:
        """Subscribe to the next occurrence of an event only."""
        self._handlers[event].append(EventHandler(handler, once=True))
        return handler

    def off(self, event: str, handler: Callable[[Any], Any]) -> bool:
        """Unsubscribe a handler. Returns True if it was registered."""
        handlers = self._handlers.get(event, [])
        for wrapper in handlers:
            if wrapper.handler is handler:
                handlers.remove(wrapper)
                return True
        return False

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    async def emit(self, event: str, payload: Any = None) -> int:
        """
        Deliver an event to its handlers in subscription order.

        Returns:
            Number of handlers invoked
        """
        handlers = list(self._handlers.get(event, []))
        for wrapper in handlers:
            if wrapper.once:
                self.off(event, wrapper.handler)
            try:
                await wrapper.handle(payload)
            except Exception:
                logger.exception(f"Handler for '{event}' failed")
        return len(handlers)


__all__ = ["EventEmitter", "EventHandler"]
