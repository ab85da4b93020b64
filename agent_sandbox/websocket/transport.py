"""
WebSocket Transport for agent-sandbox.

Thin wrapper around one ``websockets`` client connection. It knows nothing
about the sandbox protocol: it opens the socket, hands every inbound frame
to a text or binary callback, reports errors and the final close exactly
once, and writes outbound frames in order from a single writer task.

Callbacks are invoked synchronously from the reader task, so one frame's
handlers finish before the next frame is read.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from agent_sandbox.core.errors import NotConnected, TransportError

TextCallback = Callable[[str], None]
BinaryCallback = Callable[[bytes], None]
CloseCallback = Callable[[Optional[int], str], None]
ErrorCallback = Callable[[BaseException], None]

# Closing sentinel for the writer queue
_CLOSE = object()

# Close code sent when a reader or writer fails
INTERNAL_ERROR_CODE = 1011


class WebSocketTransport:
    """
    One duplex WebSocket connection.

    Usage:
        transport = WebSocketTransport(
            "wss://host/?token=...",
            headers={"Authorization": "Bearer ..."},
            on_text=handle_text,
            on_binary=handle_binary,
            on_close=handle_close,
            on_error=handle_error,
        )
        await transport.open()
        transport.send('{"action": "terminal_list"}')
        await transport.close()
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        on_text: TextCallback,
        on_binary: BinaryCallback,
        on_close: CloseCallback,
        on_error: ErrorCallback,
        open_timeout: Optional[float] = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the transport (does not connect).

        Args:
            url: ws:// or wss:// URL including query parameters.
            headers: Extra HTTP headers for the opening handshake.
            on_text: Called with each text frame.
            on_binary: Called with each binary frame.
            on_close: Called once with (close code, reason) when the socket ends.
            on_error: Called with unexpected reader/writer exceptions.
            open_timeout: Seconds allowed for the opening handshake.
            logger: Logger (defaults to module logger).
        """
        self.url = url
        self.headers = dict(headers or {})
        self._on_text = on_text
        self._on_binary = on_binary
        self._on_close = on_close
        self._on_error = on_error
        self._open_timeout = open_timeout
        self._logger = logger or logging.getLogger(__name__)

        self._ws: Optional[ClientConnection] = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_reported = False

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def open(self) -> None:
        """
        Open the socket and start the reader and writer tasks.

        Raises:
            TransportError: If the connection cannot be established.
        """
        try:
            self._ws = await connect(
                self.url,
                additional_headers=self.headers,
                open_timeout=self._open_timeout,
                max_size=None,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            self._closed = True
            raise TransportError(f"Failed to open WebSocket: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._writer_task = asyncio.create_task(self._write_loop())
        self._logger.debug("WebSocket transport opened")

    @property
    def is_open(self) -> bool:
        """Whether the transport can accept outbound frames."""
        return self._ws is not None and not self._closed

    def send(self, data: Union[str, bytes]) -> None:
        """
        Enqueue a frame for writing. Never suspends.

        Args:
            data: Text or binary frame.

        Raises:
            NotConnected: If the transport is not open.
        """
        if not self.is_open:
            raise NotConnected("WebSocket transport is not open")
        self._outbox.put_nowait(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Close the socket and stop the background tasks. Safe to call twice.

        Args:
            code: WebSocket close code.
            reason: Close reason.
        """
        if self._ws is None:
            self._closed = True
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSE)

        if self._ws is not None:
            try:
                await self._ws.close(code=code, reason=reason)
            except Exception as e:
                self._logger.debug(f"Error while closing WebSocket: {e}")

        for task in (self._writer_task, self._reader_task):
            if task is None or task is asyncio.current_task():
                continue
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._report_close(code, reason)

    # ========================================================================
    # BACKGROUND TASKS
    # ========================================================================

    async def _read_loop(self) -> None:
        """Dispatch inbound frames until the socket closes."""
        assert self._ws is not None
        ws = self._ws
        try:
            async for frame in ws:
                if isinstance(frame, bytes):
                    self._on_binary(frame)
                else:
                    self._on_text(frame)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(f"WebSocket reader error: {e}", exc_info=True)
            self._on_error(e)
            await self._close_socket(ws, "reader error")

        self._closed = True
        self._outbox.put_nowait(_CLOSE)
        self._report_close(ws.close_code, ws.close_reason or "")

    async def _write_loop(self) -> None:
        """Write queued frames in order."""
        assert self._ws is not None
        ws = self._ws
        while True:
            data = await self._outbox.get()
            if data is _CLOSE:
                return
            try:
                await ws.send(data)
            except ConnectionClosed:
                return
            except Exception as e:
                self._logger.error(f"WebSocket writer error: {e}", exc_info=True)
                self._on_error(e)
                # The reader sees the close and reports it
                self._closed = True
                await self._close_socket(ws, "writer error")
                return

    async def _close_socket(self, ws: ClientConnection, reason: str) -> None:
        try:
            await ws.close(code=INTERNAL_ERROR_CODE, reason=reason)
        except Exception as e:
            self._logger.debug(f"Error while closing WebSocket: {e}")

    def _report_close(self, code: Optional[int], reason: str) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        self._ws = None
        self._logger.debug(f"WebSocket transport closed (code={code}, reason={reason!r})")
        self._on_close(code, reason)


__all__ = ["WebSocketTransport"]
