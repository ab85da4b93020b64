"""
Event Handler Registry for agent-sandbox.

Maps event names to ordered lists of callbacks. The Connection Manager
re-emits every inbound message under its type tag, so terminal output,
exit notifications and change-feed events all reach their subscribers
through a single registry.

Dispatch rules:
- Handlers run in registration order, synchronously, to completion.
- A handler that raises is logged; the remaining handlers still run.
- A handler removed before its turn in a dispatch is not invoked.
- A handler that returns an awaitable is scheduled as a task.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

Handler = Callable[..., Any]


# ============================================================================
# EVENT NAMES
# ============================================================================

class EventType(str, Enum):
    """Well-known event names emitted by the Connection Manager."""

    # Session lifecycle
    CONNECTED = "connected"
    CLOSE = "close"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    RECONNECT_FAILED = "reconnect_failed"

    # Binary frames (catch-all; per-channel events use channel_event())
    BINARY = "binary"

    # Terminal notifications
    TERMINAL_EXITED = "terminal_exited"

    # Change-feed notifications
    WATCH_ADD = "watch_add"
    WATCH_CHANGE = "watch_change"
    WATCH_UNLINK = "watch_unlink"
    WATCH_ERROR = "watch_error"


def channel_event(channel_id: int) -> str:
    """
    Name of the channel-scoped event carrying one terminal's output.

    Args:
        channel_id: Channel (terminal) id from the binary frame header.

    Returns:
        Event name, e.g. ``"channel:3"``.
    """
    return f"channel:{int(channel_id)}"


def _event_key(event: Union[str, EventType]) -> str:
    # str-mixin enums hash by member name, so normalize to the plain value
    if isinstance(event, Enum):
        return str(event.value)
    return str(event)


# ============================================================================
# REGISTRY
# ============================================================================

class EventRegistry:
    """
    Ordered, exception-isolated event handler registry.

    Usage:
        registry = EventRegistry()
        registry.on("terminal_exited", handle_exit)
        registry.once("connected", lambda msg: print("ready"))
        registry.emit("terminal_exited", {"terminalId": 1, "exitCode": 0})
        registry.off("terminal_exited", handle_exit)
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize an empty registry.

        Args:
            logger: Logger for handler failures (defaults to module logger).
        """
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._logger = logger or logging.getLogger(__name__)

    def on(self, event: Union[str, EventType], handler: Handler) -> None:
        """
        Register a handler. Registering the same callable twice
        makes it run twice per dispatch.

        Args:
            event: Event name.
            handler: Callable invoked with the event arguments.
        """
        self._handlers.setdefault(_event_key(event), []).append(handler)

    def once(self, event: Union[str, EventType], handler: Handler) -> None:
        """
        Register a handler that removes itself after its first invocation.

        Args:
            event: Event name.
            handler: Callable invoked with the event arguments.
        """
        key = _event_key(event)

        def wrapper(*args: Any) -> Any:
            self._remove(key, wrapper)
            return handler(*args)

        wrapper.__wrapped__ = handler  # type: ignore[attr-defined]
        self.on(key, wrapper)

    def off(self, event: Union[str, EventType], handler: Handler) -> None:
        """
        Remove one registration of a handler. Unknown handlers are ignored.

        Args:
            event: Event name.
            handler: The callable passed to on() or once().
        """
        key = _event_key(event)
        handlers = self._handlers.get(key)
        if not handlers:
            return
        for registered in handlers:
            if registered is handler or getattr(registered, "__wrapped__", None) is handler:
                self._remove(key, registered)
                return

    def _remove(self, key: str, registered: Handler) -> None:
        handlers = self._handlers.get(key)
        if handlers and registered in handlers:
            handlers.remove(registered)
            if not handlers:
                del self._handlers[key]

    def emit(self, event: Union[str, EventType], *args: Any) -> int:
        """
        Dispatch an event to every registered handler.

        Args:
            event: Event name.
            *args: Arguments passed to each handler.

        Returns:
            Number of handlers invoked.
        """
        key = _event_key(event)
        snapshot = list(self._handlers.get(key, ()))
        invoked = 0

        for handler in snapshot:
            # Skip handlers removed by an earlier handler in this dispatch
            if handler not in self._handlers.get(key, ()):
                continue
            invoked += 1
            try:
                result = handler(*args)
            except Exception as e:
                self._logger.error(f"Error in event handler for {key}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(key, result)

        return invoked

    def _schedule(self, key: str, awaitable: Any) -> None:
        """Run an async handler's awaitable as a tracked task."""
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            self._logger.warning(f"No running event loop for async handler of {key}, dropping it")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._logger.error(f"Error in async event handler for {key}: {exc}", exc_info=exc)

        task.add_done_callback(_done)

    def listener_count(self, event: Union[str, EventType]) -> int:
        """Number of handlers currently registered for an event."""
        return len(self._handlers.get(_event_key(event), ()))

    def clear(self, event: Optional[Union[str, EventType]] = None) -> None:
        """
        Remove handlers for one event, or for all events.

        Args:
            event: Event name, or None to clear everything.
        """
        if event is None:
            self._handlers.clear()
        else:
            self._handlers.pop(_event_key(event), None)


# ============================================================================
# ASYNC QUEUE ITERATOR HELPER
# ============================================================================

async def iter_queue(queue: asyncio.Queue):
    """
    Async iterator for asyncio.Queue.

    Yields items from queue until None sentinel is received.

    Args:
        queue: asyncio.Queue to iterate over.

    Yields:
        Items from queue until None is received.

    Example:
        >>> queue = asyncio.Queue()
        >>> watcher.on("changed", queue.put_nowait)
        >>> async for path in iter_queue(queue):
        ...     print(path)
    """
    while True:
        item = await queue.get()
        if item is None:  # Shutdown sentinel
            break
        yield item


__all__ = [
    "EventType",
    "EventRegistry",
    "Handler",
    "channel_event",
    "iter_queue",
]
