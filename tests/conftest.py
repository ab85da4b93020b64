"""
Pytest Configuration and Shared Fixtures for agent-sandbox.

Provides common fixtures for:
- An in-memory WebSocket transport standing in for the sandbox
- Fast connection configs (short timeouts and backoff)
- Connection managers and clients wired to the fake transport
- Temporary settings directories
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import pytest

from agent_sandbox.client import SandboxClient
from agent_sandbox.core.errors import NotConnected
from agent_sandbox.core.settings import ConnectionConfig, SettingsManager, reset_settings_manager
from agent_sandbox.websocket.connection import ConnectionManager


# ============================================================================
# FAKE TRANSPORT
# ============================================================================

class FakeTransport:
    """
    In-memory transport with the WebSocketTransport interface.

    Outbound frames are parsed and recorded in ``sent``. Tests push inbound
    traffic with server_text(), server_binary() and server_close().
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        on_text: Callable,
        on_binary: Callable,
        on_close: Callable,
        on_error: Callable,
        open_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
        factory: "FakeTransportFactory" = None,
    ):
        self.url = url
        self.headers = dict(headers or {})
        self.on_text = on_text
        self.on_binary = on_binary
        self.on_close = on_close
        self.on_error = on_error
        self.factory = factory
        self.sent: List[Dict[str, Any]] = []
        self.opened = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self) -> None:
        self.opened = True
        if self.factory.open_delay:
            await asyncio.sleep(self.factory.open_delay)
        error = self.factory.next_open_error()
        if error is not None:
            self.closed = True
            raise error
        if self.factory.auto_handshake:
            asyncio.get_running_loop().call_soon(self._handshake)

    def _handshake(self) -> None:
        if not self.closed:
            self.server_text({"type": "connected"})

    def send(self, data: str) -> None:
        if not self.is_open:
            raise NotConnected("WebSocket transport is not open")
        message = json.loads(data)
        self.sent.append(message)
        responder = self.factory.responder
        if responder is not None:
            reply = responder(message)
            if reply is not None:
                asyncio.get_running_loop().call_soon(self.server_text, reply)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.on_close(code, reason)

    # Server side helpers

    def server_text(self, message: Any) -> None:
        data = message if isinstance(message, str) else json.dumps(message)
        self.on_text(data)

    def server_binary(self, data: bytes) -> None:
        self.on_binary(data)

    def server_close(self, code: int = 1006, reason: str = "") -> None:
        self.closed = True
        self.on_close(code, reason)

    def reply(self, reply_type: str, request: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
        """Answer a request (default: the last one sent) with the given type."""
        request = request if request is not None else self.sent[-1]
        self.server_text({"type": reply_type, "requestId": request["requestId"], **fields})


class FakeTransportFactory:
    """
    Transport factory recording every transport it creates.

    Attributes:
        auto_handshake: Send {"type": "connected"} right after open().
        open_errors: Exceptions raised by successive open() calls.
        open_delay: Seconds each open() takes before succeeding or failing.
        responder: Optional callable mapping a sent message to a reply.
    """

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.auto_handshake = True
        self.open_delay = 0.0
        self.open_errors: List[Optional[BaseException]] = []
        self.responder: Optional[Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = None

    def __call__(self, url: str, **kwargs: Any) -> FakeTransport:
        transport = FakeTransport(url, factory=self, **kwargs)
        self.transports.append(transport)
        return transport

    def next_open_error(self) -> Optional[BaseException]:
        if self.open_errors:
            return self.open_errors.pop(0)
        return None

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


# ============================================================================
# CONNECTION FIXTURES
# ============================================================================

@pytest.fixture
def fast_config():
    """
    ConnectionConfig with short timeouts and backoff.

    Returns:
        ConnectionConfig: Config suitable for tests.
    """
    return ConnectionConfig(
        connect_timeout=0.2,
        request_timeout=0.2,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.04,
        max_reconnect_attempts=3,
    )


@pytest.fixture
def transport_factory():
    """
    Fake transport factory.

    Returns:
        FakeTransportFactory: Factory to pass as transport_factory.
    """
    return FakeTransportFactory()


@pytest.fixture
def make_manager(transport_factory, fast_config):
    """
    Factory fixture for ConnectionManagers on the fake transport.

    Returns:
        Callable: Function accepting ConnectionManager keyword overrides.
    """
    def _make(**kwargs: Any) -> ConnectionManager:
        kwargs.setdefault("config", fast_config)
        kwargs.setdefault("transport_factory", transport_factory)
        return ConnectionManager("https://sandbox.test/", "test-token", **kwargs)

    return _make


@pytest.fixture
def make_client(transport_factory, fast_config):
    """
    Factory fixture for SandboxClients on the fake transport.

    Returns:
        Callable: Function accepting SandboxClient keyword overrides.
    """
    def _make(**kwargs: Any) -> SandboxClient:
        kwargs.setdefault("config", fast_config)
        kwargs.setdefault("transport_factory", transport_factory)
        return SandboxClient("test-token", "https://sandbox.test", **kwargs)

    return _make


# ============================================================================
# SETTINGS FIXTURES
# ============================================================================

@pytest.fixture
def settings_manager(tmp_path):
    """
    SettingsManager writing to a temporary directory.

    Returns:
        SettingsManager: Isolated settings manager.
    """
    return SettingsManager(config_dir=tmp_path / "config")


# ============================================================================
# CLEANUP FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def cleanup_global_state():
    """
    Cleanup global state after each test.
    """
    yield
    reset_settings_manager()
