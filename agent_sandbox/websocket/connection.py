"""
Connection Manager for agent-sandbox.

Owns exactly one WebSocket transport per sandbox session and provides:
- connect/disconnect with an application-level "connected" handshake
- request/response correlation by ``requestId`` with per-call timeouts
- demultiplexing of binary terminal output by channel id
- automatic reconnection with capped exponential backoff
- an event registry through which every inbound message is re-emitted

State machine:
    disconnected -> connecting -> connected -> reconnecting -> connecting
                                                           \\-> disconnected
"""

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Union
from urllib.parse import urlencode

from agent_sandbox.core.errors import (
    ConnectionClosed,
    ConnectTimeout,
    EnvironmentUnavailable,
    NotConnected,
    ReconnectFailed,
    RequestTimeout,
    TransportError,
)
from agent_sandbox.core.events import EventRegistry, EventType, Handler, channel_event
from agent_sandbox.core.settings import ConnectionConfig, reconnect_delay
from agent_sandbox.websocket.models import (
    REQUEST_ID_FIELD,
    MessageType,
    expected_reply_types,
    message_tag,
)
from agent_sandbox.websocket.transport import WebSocketTransport

StatusCheck = Callable[[], Any]


class ConnectionState(str, Enum):
    """Transport state of a session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class PendingCall:
    """
    A call awaiting its correlated reply.

    Attributes:
        request_id: Correlation id sent as ``requestId``.
        future: Resolved with the reply, or failed with the rejection.
        timeout_handle: Timer that fails the call with RequestTimeout.
        expected_types: Reply ``type`` tags that resolve this call (None = any).
    """

    request_id: str
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle] = None
    expected_types: Optional[FrozenSet[str]] = None

    def accepts(self, message: Dict[str, Any]) -> bool:
        """Whether a same-id reply resolves this call."""
        return self.expected_types is None or message.get("type") in self.expected_types


# ============================================================================
# URL AND HEADERS
# ============================================================================

def build_ws_url(base_url: str, token: str, binary: bool = True, silent: bool = False) -> str:
    """
    Build the WebSocket URL for a sandbox.

    Args:
        base_url: http(s):// or ws(s):// base address.
        token: Bearer token, also passed as ``token`` query parameter.
        binary: Request binary terminal frames.
        silent: Request silent mode (no broadcasts).

    Returns:
        URL such as ``wss://host?token=abc&binary=true``.

    Example:
        >>> build_ws_url("https://sandbox.example.com/", "t")
        'wss://sandbox.example.com?token=t&binary=true'
    """
    url = base_url.rstrip("/")
    if url.startswith("http"):
        url = "ws" + url[len("http"):]

    params = {"token": token}
    if binary:
        params["binary"] = "true"
    if silent:
        params["silent"] = "true"
    return f"{url}?{urlencode(params)}"


def build_headers(token: str, silent: bool = False) -> Dict[str, str]:
    """Handshake headers: bearer auth plus the silent-mode marker."""
    headers = {"Authorization": f"Bearer {token}"}
    if silent:
        headers["x-notify-type"] = "silent"
    return headers


# ============================================================================
# CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Persistent duplex session with one sandbox.

    Usage:
        connection = ConnectionManager("https://sandbox.example.com", token)
        await connection.connect()
        reply = await connection.send_request({"action": "terminal_list"})
        connection.on("terminal_exited", handle_exit)
        await connection.disconnect()
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        sandbox_id: Optional[str] = None,
        status_check: Optional[StatusCheck] = None,
        config: Optional[ConnectionConfig] = None,
        logger: Optional[logging.Logger] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize the manager (does not connect).

        Args:
            base_url: Sandbox base address.
            token: Bearer credential.
            sandbox_id: Sandbox id, kept for diagnostics.
            status_check: Optional liveness predicate (sync or async) consulted
                before every connection attempt.
            config: Timeouts and reconnect tunables.
            logger: Logger for diagnostics (defaults to module logger).
            transport_factory: Transport class or factory (defaults to
                WebSocketTransport).
        """
        self.base_url = base_url
        self.token = token
        self.sandbox_id = sandbox_id
        self.config = config or ConnectionConfig()

        self._status_check = status_check
        self._logger = logger or logging.getLogger(__name__)
        self._transport_factory = transport_factory or WebSocketTransport
        self._events = EventRegistry(logger=self._logger)

        self._binary = self.config.binary
        self._silent = self.config.silent

        self._transport: Optional[Any] = None
        self._state = ConnectionState.DISCONNECTED
        self._pending: Dict[str, PendingCall] = {}
        self._handshake: Optional[asyncio.Future] = None
        self._connect_task: Optional[asyncio.Task] = None
        # Bumped by disconnect() so an in-flight connect can tell it was aborted
        self._generation = 0

        self._should_reconnect = self.config.auto_reconnect
        self._reconnect_attempts = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        # Set when a live session drops without disconnect()
        self._recovering = False

    # ========================================================================
    # PROPERTIES
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        """Whether the handshake completed and the transport is live."""
        return self._state is ConnectionState.CONNECTED and self._transport is not None

    @property
    def pending_count(self) -> int:
        """Number of calls awaiting a reply."""
        return len(self._pending)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def url(self) -> str:
        return build_ws_url(self.base_url, self.token, self._binary, self._silent)

    # ========================================================================
    # EVENTS
    # ========================================================================

    def on(self, event: Union[str, EventType], handler: Handler) -> None:
        """Register an event handler."""
        self._events.on(event, handler)

    def once(self, event: Union[str, EventType], handler: Handler) -> None:
        """Register a handler that runs at most once."""
        self._events.once(event, handler)

    def off(self, event: Union[str, EventType], handler: Handler) -> None:
        """Remove an event handler."""
        self._events.off(event, handler)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def connect(self, binary: Optional[bool] = None, silent: Optional[bool] = None) -> None:
        """
        Connect and wait for the handshake. No-op when already connected.

        Concurrent callers share one attempt; only one transport is opened.

        Args:
            binary: Override the binary-frames option for this connection.
            silent: Override the silent-mode option for this connection.

        Raises:
            EnvironmentUnavailable: If the liveness check reports the sandbox down.
            ConnectTimeout: If opening plus handshake exceeds connect_timeout.
            TransportError: If the WebSocket cannot be opened.
            ConnectionClosed: If disconnect() runs while connecting.
        """
        if self.connected:
            return
        if binary is not None:
            self._binary = binary
        if silent is not None:
            self._silent = silent
        if self.config.auto_reconnect:
            self._should_reconnect = True
        await self._ensure_connect()

    async def _ensure_connect(self) -> None:
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._open())
            self._connect_task.add_done_callback(self._on_connect_done)
        await asyncio.shield(self._connect_task)

    def _on_connect_done(self, task: asyncio.Task) -> None:
        # Retrieve the outcome so an abandoned attempt does not warn
        if not task.cancelled():
            task.exception()

    async def _open(self) -> None:
        """One connection attempt: liveness check, transport, handshake."""
        generation = self._generation
        self._state = ConnectionState.CONNECTING

        try:
            if self._status_check is not None:
                alive = self._status_check()
                if inspect.isawaitable(alive):
                    alive = await alive
                if not alive:
                    raise EnvironmentUnavailable()
            self._check_generation(generation)
        except BaseException:
            if self._generation == generation:
                self._state = ConnectionState.DISCONNECTED
            raise

        loop = asyncio.get_running_loop()
        self._handshake = handshake = loop.create_future()

        def on_text(data: str) -> None:
            self._handle_text(transport, data)

        def on_binary(data: bytes) -> None:
            self._handle_binary(transport, data)

        def on_close(code: Optional[int], reason: str) -> None:
            self._handle_close(transport, code, reason)

        def on_error(error: BaseException) -> None:
            self._handle_error(transport, error)

        transport = self._transport_factory(
            self.url,
            headers=build_headers(self.token, self._silent),
            on_text=on_text,
            on_binary=on_binary,
            on_close=on_close,
            on_error=on_error,
            open_timeout=self.config.connect_timeout,
            logger=self._logger,
        )
        self._transport = transport
        self._logger.info(f"Connecting to sandbox {self.sandbox_id or self.base_url}")

        try:
            await asyncio.wait_for(
                self._establish(transport, handshake, generation),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            self._logger.error(f"Connection timeout after {self.config.connect_timeout}s")
            await self._abort(transport)
            raise ConnectTimeout(self.config.connect_timeout) from None
        except TransportError as e:
            await self._abort(transport)
            if isinstance(e.__cause__, (asyncio.TimeoutError, TimeoutError)):
                self._logger.error(f"Connection timeout after {self.config.connect_timeout}s")
                raise ConnectTimeout(self.config.connect_timeout) from e
            raise
        except BaseException:
            await self._abort(transport)
            raise
        finally:
            if self._handshake is handshake:
                self._handshake = None
            if handshake.done() and not handshake.cancelled():
                handshake.exception()

        self._reconnect_attempts = 0
        self._cancel_reconnect_timer()
        self._logger.info("WebSocket connected")

        # Any handshake after an unexpected drop counts as a reconnect
        if self._recovering:
            self._recovering = False
            self._logger.info("Reconnected")
            self._events.emit(EventType.RECONNECTED)

    async def _establish(self, transport: Any, handshake: asyncio.Future, generation: int) -> None:
        """Open the transport and wait for the handshake, under one deadline."""
        await transport.open()
        self._check_generation(generation)
        await handshake
        self._check_generation(generation)

    def _check_generation(self, generation: int) -> None:
        if self._generation != generation:
            raise ConnectionClosed("Disconnected while connecting")

    async def _abort(self, transport: Any) -> None:
        """Drop a transport whose connection attempt failed."""
        if self._transport is transport:
            self._transport = None
            self._state = ConnectionState.DISCONNECTED
        await transport.close()

    async def disconnect(self) -> None:
        """
        Close the session and suppress reconnection.

        Pending calls are rejected with ConnectionClosed. Safe to call on an
        already-closed session.
        """
        # Cleared before anything else so no close path can schedule a reconnect
        self._should_reconnect = False
        self._generation += 1
        self._cancel_reconnect_timer()

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(ConnectionClosed("Disconnected while connecting"))

        self._reject_pending()

        transport = self._transport
        if transport is not None:
            await transport.close()
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._recovering = False
        self._logger.info("WebSocket disconnected")

    # ========================================================================
    # OUTBOUND
    # ========================================================================

    def send(self, message: Dict[str, Any]) -> None:
        """
        Send a message without waiting for a reply.

        Raises:
            NotConnected: If there is no live session.
        """
        if not self.connected:
            raise NotConnected()
        self._transport.send(json.dumps(message))

    async def send_request(
        self,
        message: Dict[str, Any],
        expected_types: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send a call and wait for its correlated reply.

        Args:
            message: Message dict; a fresh ``requestId`` is attached.
            expected_types: Reply ``type`` tags that resolve the call. Defaults
                to the known set for the message's action, else any type.
            timeout: Seconds to wait (defaults to config.request_timeout).

        Returns:
            The first matching reply.

        Raises:
            NotConnected: If there is no live session.
            RequestTimeout: If no matching reply arrives in time.
            ConnectionClosed: If the session closes first.
        """
        if not self.connected:
            raise NotConnected()

        request_id = str(uuid.uuid4())
        while request_id in self._pending:
            request_id = str(uuid.uuid4())

        payload = dict(message)
        payload[REQUEST_ID_FIELD] = request_id
        if expected_types is not None:
            types: Optional[FrozenSet[str]] = frozenset(expected_types)
        else:
            types = expected_reply_types(payload)

        loop = asyncio.get_running_loop()
        wait = self.config.request_timeout if timeout is None else timeout
        call = PendingCall(request_id=request_id, future=loop.create_future(), expected_types=types)
        call.timeout_handle = loop.call_later(wait, self._expire, request_id, wait)
        self._pending[request_id] = call

        try:
            self._transport.send(json.dumps(payload))
            return await call.future
        finally:
            # Covers send failure and cancellation of the awaiting task
            self._discard(request_id)

    def _expire(self, request_id: str, wait: float) -> None:
        call = self._pending.pop(request_id, None)
        if call is not None and not call.future.done():
            self._logger.warning(f"Request {request_id} timed out after {wait}s")
            call.future.set_exception(RequestTimeout(request_id, wait))

    def _discard(self, request_id: str) -> None:
        call = self._pending.pop(request_id, None)
        if call is not None and call.timeout_handle is not None:
            call.timeout_handle.cancel()

    def _reject_pending(self) -> None:
        calls = list(self._pending.values())
        self._pending.clear()
        for call in calls:
            if call.timeout_handle is not None:
                call.timeout_handle.cancel()
            if not call.future.done():
                call.future.set_exception(ConnectionClosed())

    # ========================================================================
    # INBOUND
    # ========================================================================

    def _handle_text(self, transport: Any, data: str) -> None:
        if transport is not self._transport:
            return
        try:
            message = json.loads(data)
        except ValueError as e:
            self._logger.warning(f"Dropping non-JSON message: {e}")
            return
        if not isinstance(message, dict):
            self._logger.warning(f"Dropping non-object message: {type(message).__name__}")
            return

        tag = message_tag(message)
        if tag == MessageType.CONNECTED.value:
            self._state = ConnectionState.CONNECTED
            if self._handshake is not None and not self._handshake.done():
                self._handshake.set_result(message)

        request_id = message.get(REQUEST_ID_FIELD)
        if isinstance(request_id, str) and request_id in self._pending:
            self._resolve(request_id, message)

        if tag:
            self._events.emit(tag, message)

    def _resolve(self, request_id: str, message: Dict[str, Any]) -> None:
        call = self._pending[request_id]
        if not call.accepts(message):
            self._logger.debug(
                f"Reply {message.get('type')} for {request_id} not in {sorted(call.expected_types or ())}"
            )
            return
        del self._pending[request_id]
        if call.timeout_handle is not None:
            call.timeout_handle.cancel()
        if not call.future.done():
            call.future.set_result(message)

    def _handle_binary(self, transport: Any, data: bytes) -> None:
        if transport is not self._transport:
            return
        if not data:
            self._logger.warning("Dropping empty binary frame")
            return
        channel_id = data[0]
        payload = bytes(data[1:])
        self._events.emit(channel_event(channel_id), payload)
        self._events.emit(EventType.BINARY, channel_id, payload)

    def _handle_error(self, transport: Any, error: BaseException) -> None:
        if transport is not self._transport:
            return
        self._logger.error(f"WebSocket error: {error}")
        self._events.emit(EventType.ERROR, error)

    def _handle_close(self, transport: Any, code: Optional[int], reason: str) -> None:
        if transport is not self._transport:
            self._logger.debug("Ignoring close from a replaced transport")
            return

        was_connected = self._state is ConnectionState.CONNECTED
        self._transport = None
        self._state = ConnectionState.DISCONNECTED

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(ConnectionClosed("Connection closed before handshake"))
        self._reject_pending()

        if was_connected:
            self._recovering = True

        self._logger.info(f"WebSocket closed (code={code}, reason={reason!r})")
        self._events.emit(EventType.CLOSE, code, reason)

        if was_connected and self._should_reconnect:
            self._schedule_reconnect()

    # ========================================================================
    # RECONNECTION
    # ========================================================================

    def _schedule_reconnect(self) -> None:
        max_attempts = self.config.max_reconnect_attempts
        if self._reconnect_attempts >= max_attempts:
            self._state = ConnectionState.DISCONNECTED
            self._logger.error(f"Max reconnection attempts ({max_attempts}) reached")
            self._events.emit(EventType.RECONNECT_FAILED, ReconnectFailed(self._reconnect_attempts))
            return

        delay = reconnect_delay(
            self._reconnect_attempts,
            base=self.config.reconnect_base_delay,
            cap=self.config.reconnect_max_delay,
        )
        self._reconnect_attempts += 1
        self._state = ConnectionState.RECONNECTING
        self._logger.info(
            f"Reconnecting in {delay}s (attempt {self._reconnect_attempts}/{max_attempts})"
        )
        self._events.emit(EventType.RECONNECTING, self._reconnect_attempts, delay)

        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._start_reconnect)

    def _start_reconnect(self) -> None:
        self._reconnect_handle = None
        if not self._should_reconnect:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        if not self._should_reconnect or self.connected:
            return
        try:
            await self._ensure_connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")
            if self._should_reconnect and not self.connected:
                self._schedule_reconnect()
            return

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None


__all__ = [
    "ConnectionState",
    "PendingCall",
    "ConnectionManager",
    "build_ws_url",
    "build_headers",
]
