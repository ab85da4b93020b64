"""
Tests for agent_sandbox/managers/watcher.py - WatcherManager.
"""

import asyncio
import logging

import pytest

from agent_sandbox.core.errors import TransportError
from agent_sandbox.core.events import EventType
from agent_sandbox.managers.watcher import ChangeKind, WatcherManager


@pytest.fixture
def watcher(make_manager):
    """WatcherManager on the fake transport."""
    return WatcherManager(make_manager())


def watch_messages(transport):
    return [m for m in transport.sent if m.get("type") in ("watch", "stop_watch")]


class TestStart:
    """Tests for start()."""

    @pytest.mark.asyncio
    async def test_start_sends_watch(self, watcher, transport_factory):
        """Test the watch message and active flag."""
        await watcher.start(ignore_patterns=["node_modules", ".git"])

        assert watcher.active
        assert transport_factory.last.sent == [
            {"type": "watch", "ignorePatterns": ["node_modules", ".git"]}
        ]

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, watcher, transport_factory, caplog):
        """Test that a second start sends nothing and registers nothing."""
        first, second = [], []
        await watcher.start(on_change=first.append)

        with caplog.at_level(logging.WARNING):
            await watcher.start(on_change=second.append)

        assert len(watch_messages(transport_factory.last)) == 1
        assert "already active" in caplog.text

        transport_factory.last.server_text({"type": "watch_change", "path": "/app/a.py"})
        assert first == ["/app/a.py"]
        assert second == []

    @pytest.mark.asyncio
    async def test_concurrent_starts_subscribe_once(self, watcher, transport_factory):
        """Test that overlapping start() calls send one watch and deliver once."""
        received = []

        await asyncio.gather(
            watcher.start(on_change=received.append),
            watcher.start(on_change=received.append),
        )
        transport_factory.last.server_text({"type": "watch_change", "path": "/a"})

        assert watch_messages(transport_factory.last) == [{"type": "watch", "ignorePatterns": []}]
        assert received == ["/a"]

    @pytest.mark.asyncio
    async def test_failed_start_can_be_retried(self, watcher, transport_factory):
        """Test that a start() whose connect fails leaves the watcher inactive."""
        transport_factory.open_errors = [TransportError("refused")]

        with pytest.raises(TransportError):
            await watcher.start()
        assert not watcher.active

        await watcher.start()
        assert watcher.active
        assert watch_messages(transport_factory.last) == [{"type": "watch", "ignorePatterns": []}]

    @pytest.mark.asyncio
    async def test_events_map_to_kinds(self, watcher, transport_factory):
        """Test each wire event reaches its kind's callback with the path."""
        added, changed, removed, errors = [], [], [], []
        await watcher.start(
            on_add=added.append,
            on_change=changed.append,
            on_remove=removed.append,
            on_error=errors.append,
        )
        transport = transport_factory.last

        transport.server_text({"type": "watch_add", "path": "/a"})
        transport.server_text({"type": "watch_change", "path": "/b"})
        transport.server_text({"type": "watch_unlink", "path": "/c"})
        transport.server_text({"type": "watch_error", "path": "/d"})

        assert (added, changed, removed, errors) == (["/a"], ["/b"], ["/c"], ["/d"])

    @pytest.mark.asyncio
    async def test_raising_callback_is_isolated(self, watcher, transport_factory, caplog):
        """Test that a failing callback is logged and the others still run."""
        seen = []

        def broken(path):
            raise RuntimeError("callback bug")

        await watcher.start(on_add=broken)
        watcher.on("added", seen.append)

        with caplog.at_level(logging.ERROR):
            transport_factory.last.server_text({"type": "watch_add", "path": "/x"})

        assert seen == ["/x"]
        assert "callback bug" in caplog.text


class TestCallbacks:
    """Tests for on()/off()."""

    @pytest.mark.asyncio
    async def test_on_off(self, watcher, transport_factory):
        await watcher.start()
        removed = []
        watcher.on(ChangeKind.REMOVED, removed.append)
        transport_factory.last.server_text({"type": "watch_unlink", "path": "/1"})
        watcher.off("removed", removed.append)
        transport_factory.last.server_text({"type": "watch_unlink", "path": "/2"})

        assert removed == ["/1"]

    def test_unknown_kind_warns(self, watcher, caplog):
        with caplog.at_level(logging.WARNING):
            watcher.on("renamed", lambda path: None)
        watcher.off("renamed", lambda path: None)

        assert "Unknown watcher event kind" in caplog.text


class TestStop:
    """Tests for stop() and disconnect()."""

    @pytest.mark.asyncio
    async def test_stop_sends_and_clears(self, watcher, transport_factory):
        """Test stop_watch and callback removal."""
        changed = []
        await watcher.start(on_change=changed.append)

        watcher.stop()

        assert not watcher.active
        assert transport_factory.last.sent[-1] == {"type": "stop_watch"}
        transport_factory.last.server_text({"type": "watch_change", "path": "/a"})
        assert changed == []

    @pytest.mark.asyncio
    async def test_stop_while_disconnected(self, watcher, transport_factory):
        """Test that stop() without a session clears state without sending."""
        changed = []
        await watcher.start(on_change=changed.append)
        await watcher.connection.disconnect()

        watcher.stop()

        assert not watcher.active
        assert watch_messages(transport_factory.last) == [{"type": "watch", "ignorePatterns": []}]

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, watcher, transport_factory):
        await watcher.start()
        watcher.stop()
        await watcher.start(ignore_patterns=["dist"])

        assert watcher.active
        assert transport_factory.last.sent[-1] == {"type": "watch", "ignorePatterns": ["dist"]}

    @pytest.mark.asyncio
    async def test_disconnect(self, watcher):
        await watcher.start()
        await watcher.disconnect()

        assert not watcher.active
        assert not watcher.connection.connected


class TestReconnect:
    """Tests for re-subscription after transport recovery."""

    @pytest.mark.asyncio
    async def test_watch_reannounced_after_reconnect(self, watcher, transport_factory):
        """Test that an active watch is sent again on the new transport."""
        await watcher.start(ignore_patterns=["node_modules"])
        reconnected = asyncio.Event()
        watcher.connection.on(EventType.RECONNECTED, reconnected.set)

        transport_factory.last.server_close()
        await asyncio.wait_for(reconnected.wait(), timeout=1)

        assert len(transport_factory.transports) == 2
        assert transport_factory.last.sent == [{"type": "watch", "ignorePatterns": ["node_modules"]}]

    @pytest.mark.asyncio
    async def test_inactive_watch_not_reannounced(self, watcher, transport_factory):
        await watcher.connection.connect()
        reconnected = asyncio.Event()
        watcher.connection.on(EventType.RECONNECTED, reconnected.set)

        transport_factory.last.server_close()
        await asyncio.wait_for(reconnected.wait(), timeout=1)

        assert transport_factory.last.sent == []

    @pytest.mark.asyncio
    async def test_watch_reannounced_when_caller_reconnects(self, make_manager, transport_factory, fast_config):
        """Test that a connect() during the backoff window also restores the watch."""
        config = fast_config.model_copy(update={"reconnect_base_delay": 0.5})
        watcher = WatcherManager(make_manager(config=config))
        await watcher.start(ignore_patterns=["dist"])

        transport_factory.last.server_close()
        await watcher.connection.connect()

        assert len(transport_factory.transports) == 2
        assert watcher.active
        assert transport_factory.last.sent == [{"type": "watch", "ignorePatterns": ["dist"]}]
        await watcher.disconnect()
