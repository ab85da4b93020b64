"""
File Watcher Manager for agent-sandbox.

Subscribes to the sandbox's file change feed over the shared connection and
fans change notifications out to per-kind callbacks.

Wire events map to change kinds:
    watch_add    -> added
    watch_change -> changed
    watch_unlink -> removed
    watch_error  -> error

Callbacks receive the ``path`` of the notification. A raising callback is
logged and does not affect the others.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from agent_sandbox.core.events import EventType
from agent_sandbox.websocket.connection import ConnectionManager
from agent_sandbox.websocket.models import create_stop_watch_message, create_watch_message

ChangeCallback = Callable[[Optional[str]], Any]


class ChangeKind(str, Enum):
    """Kinds of file change notification."""

    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"
    ERROR = "error"


WIRE_EVENT_KINDS: Dict[EventType, ChangeKind] = {
    EventType.WATCH_ADD: ChangeKind.ADDED,
    EventType.WATCH_CHANGE: ChangeKind.CHANGED,
    EventType.WATCH_UNLINK: ChangeKind.REMOVED,
    EventType.WATCH_ERROR: ChangeKind.ERROR,
}


class WatcherManager:
    """
    One change-feed subscription per session.

    Usage:
        watcher = WatcherManager(connection)
        await watcher.start(
            ignore_patterns=["node_modules", ".git"],
            on_change=lambda path: print("changed", path),
        )
        watcher.on("removed", lambda path: print("removed", path))
        watcher.stop()
    """

    def __init__(self, connection: ConnectionManager, logger: Optional[logging.Logger] = None):
        self.connection = connection
        self._logger = logger or logging.getLogger(__name__)
        self._active = False
        self._start_lock = asyncio.Lock()
        self.ignore_patterns: List[str] = []
        self._callbacks: Dict[ChangeKind, List[ChangeCallback]] = {kind: [] for kind in ChangeKind}

        for wire_event, kind in WIRE_EVENT_KINDS.items():
            connection.on(wire_event, self._make_dispatcher(kind))
        connection.on(EventType.RECONNECTED, self._handle_reconnected)

    @property
    def active(self) -> bool:
        """Whether a watch is currently running."""
        return self._active

    def _make_dispatcher(self, kind: ChangeKind) -> Callable[[Dict[str, Any]], None]:
        def dispatch(message: Dict[str, Any]) -> None:
            self._emit(kind, message.get("path"))

        return dispatch

    def _emit(self, kind: ChangeKind, path: Optional[str]) -> None:
        for callback in list(self._callbacks[kind]):
            try:
                callback(path)
            except Exception as e:
                self._logger.error(f"Error in watcher {kind.value} callback: {e}", exc_info=True)

    def _handle_reconnected(self) -> None:
        # The sandbox forgets the subscription with the old transport
        if not self._active:
            return
        self._logger.info("Re-subscribing file watcher after reconnect")
        self.connection.send(create_watch_message(self.ignore_patterns))

    @staticmethod
    def _kind(kind: Union[str, ChangeKind]) -> Optional[ChangeKind]:
        try:
            return ChangeKind(kind)
        except ValueError:
            return None

    # ========================================================================
    # SUBSCRIPTION
    # ========================================================================

    async def start(
        self,
        ignore_patterns: Optional[List[str]] = None,
        on_add: Optional[ChangeCallback] = None,
        on_change: Optional[ChangeCallback] = None,
        on_remove: Optional[ChangeCallback] = None,
        on_error: Optional[ChangeCallback] = None,
    ) -> None:
        """
        Start watching files.

        Calling start() while already active, or while another start() is
        still connecting, logs a warning and does nothing, including
        registering the supplied callbacks.

        Args:
            ignore_patterns: Patterns the sandbox should not report.
            on_add: Called with the path of each added file.
            on_change: Called with the path of each changed file.
            on_remove: Called with the path of each removed file.
            on_error: Called on watch errors.
        """
        if self._active or self._start_lock.locked():
            self._logger.warning("File watcher already active")
            return

        async with self._start_lock:
            if not self.connection.connected:
                await self.connection.connect()

            self.ignore_patterns = list(ignore_patterns or [])
            self.connection.send(create_watch_message(self.ignore_patterns))
            self._active = True

        for kind, callback in (
            (ChangeKind.ADDED, on_add),
            (ChangeKind.CHANGED, on_change),
            (ChangeKind.REMOVED, on_remove),
            (ChangeKind.ERROR, on_error),
        ):
            if callback is not None:
                self._callbacks[kind].append(callback)

        self._logger.info("Started watching files")

    def stop(self) -> None:
        """Stop watching and drop every registered callback."""
        if self._active and self.connection.connected:
            self.connection.send(create_stop_watch_message())
        was_active = self._active
        self._active = False
        for callbacks in self._callbacks.values():
            callbacks.clear()
        if was_active:
            self._logger.info("Stopped watching files")

    def on(self, kind: Union[str, ChangeKind], callback: ChangeCallback) -> None:
        """
        Register a callback for one change kind.

        Args:
            kind: "added", "changed", "removed" or "error".
            callback: Called with the notification path.
        """
        resolved = self._kind(kind)
        if resolved is None:
            self._logger.warning(f"Unknown watcher event kind: {kind}")
            return
        self._callbacks[resolved].append(callback)

    def off(self, kind: Union[str, ChangeKind], callback: ChangeCallback) -> None:
        """Remove a callback. Unknown kinds and callbacks are ignored."""
        resolved = self._kind(kind)
        if resolved is None:
            return
        if callback in self._callbacks[resolved]:
            self._callbacks[resolved].remove(callback)

    async def disconnect(self) -> None:
        """Stop watching and close the shared connection."""
        self.stop()
        await self.connection.disconnect()


__all__ = [
    "ChangeKind",
    "WatcherManager",
    "WIRE_EVENT_KINDS",
]
