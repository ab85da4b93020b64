"""
Terminal Manager for agent-sandbox.

Creates, attaches to, lists and closes remote terminals over the shared
Connection Manager. Each Terminal handle receives its output through the
binary channel named after its id and its exit notification through the
``terminal_exited`` event.

Remote application errors (``terminal_error`` replies) are returned as
``Result.failure(payload)``. Transport failures and timeouts raise.

Usage:
    terminals = TerminalManager(connection)

    result = await terminals.execute("ls", args=["-la"], cwd="/opt/app")
    print(result.unwrap().logs)

    created = await terminals.create(on_data=print)
    terminal = created.unwrap()
    terminal.write("npm install\\n")
    await terminal.close()
"""

import asyncio
import codecs
import logging
from typing import Any, Callable, Dict, List, Optional

from agent_sandbox.core.errors import NotConnected, RequestTimeout, Result, is_error_reply
from agent_sandbox.core.events import EventType, channel_event
from agent_sandbox.websocket.connection import ConnectionManager
from agent_sandbox.websocket.models import (
    ExecResult,
    GetStateRequest,
    MessageType,
    TerminalCreateRequest,
    TerminalListRequest,
    TerminalState,
    create_close_message,
    create_input_message,
    create_resize_message,
    parse_exec_result,
)

DataCallback = Callable[[str], Any]
ExitCallback = Callable[[int, int], Any]

# Added to a command's own timeout when waiting for an awaited execution
EXECUTE_GRACE_SECONDS = 5.0


# ============================================================================
# TERMINAL SESSION
# ============================================================================

class Terminal:
    """
    Handle to one remote terminal.

    Attributes:
        id: Remote terminal id (also the binary channel id).
        alive: False once the terminal exited or was closed.
        cols: Last known column count.
        rows: Last known row count.
        cwd: Working directory reported by the sandbox.
        existing: True if create() attached to a terminal that already existed.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        terminal_id: int,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        manager: Optional["TerminalManager"] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.id = terminal_id
        self.alive = True
        self.cols: Optional[int] = None
        self.rows: Optional[int] = None
        self.cwd: Optional[str] = None
        self.existing = False

        self._connection = connection
        self._manager = manager
        self._logger = logger or logging.getLogger(__name__)
        self._data_callback = on_data
        self._exit_callback = on_exit
        # Multi-byte characters may be split across frames
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        # Bound once so off() can find the same objects
        self._output_handler = self._handle_output
        self._exit_handler = self._handle_exit
        self._channel = channel_event(terminal_id)
        connection.on(self._channel, self._output_handler)
        connection.on(EventType.TERMINAL_EXITED, self._exit_handler)

    def __repr__(self) -> str:
        return f"Terminal(id={self.id}, alive={self.alive})"

    # ========================================================================
    # CALLBACKS
    # ========================================================================

    def on_data(self, callback: Optional[DataCallback]) -> None:
        """Set or replace the output callback (receives decoded text)."""
        self._data_callback = callback

    def on_exit(self, callback: Optional[ExitCallback]) -> None:
        """Set or replace the exit callback (receives exit code and signal)."""
        self._exit_callback = callback

    def _handle_output(self, payload: bytes) -> None:
        text = self._decoder.decode(payload)
        if text and self._data_callback is not None:
            self._data_callback(text)

    def _handle_exit(self, message: Dict[str, Any]) -> None:
        if message.get("terminalId") != self.id:
            return
        exit_code = int(message.get("exitCode") or 0)
        signal = int(message.get("signal") or 0)
        self._logger.info(f"Terminal {self.id} exited (code={exit_code}, signal={signal})")

        tail = self._decoder.decode(b"", final=True)
        data_callback = self._data_callback
        callback = self._exit_callback
        self._mark_closed()

        if tail and data_callback is not None:
            try:
                data_callback(tail)
            except Exception as e:
                self._logger.error(f"Error in terminal {self.id} data callback: {e}", exc_info=True)
        if callback is not None:
            callback(exit_code, signal)

    def _mark_closed(self) -> None:
        """Mark the session closed and release its event handlers."""
        if not self.alive:
            return
        self.alive = False
        self._connection.off(self._channel, self._output_handler)
        self._connection.off(EventType.TERMINAL_EXITED, self._exit_handler)
        if self._manager is not None:
            self._manager._forget(self)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def write(self, data: str) -> None:
        """
        Send input to the terminal. Fire-and-forget.

        Raises:
            NotConnected: If there is no live session.
        """
        self._connection.send(create_input_message(self.id, data))

    async def resize(self, cols: int, rows: int) -> Result[None]:
        """
        Resize the terminal.

        Args:
            cols: New column count.
            rows: New row count.

        Returns:
            Result.success() or the remote error.
        """
        reply = await self._connection.send_request(create_resize_message(self.id, cols, rows))
        if is_error_reply(reply):
            return Result.failure(reply)
        if reply.get("type") == MessageType.TERMINAL_RESIZED.value:
            self.cols = reply.get("cols", cols)
            self.rows = reply.get("rows", rows)
        return Result.success()

    async def get_state(
        self,
        new_only: bool = False,
        max_lines: int = 100,
        direction: str = "bottom",
    ) -> Result[TerminalState]:
        """
        Fetch a snapshot of recent output.

        Args:
            new_only: Only content produced since the last fetch.
            max_lines: Maximum number of lines.
            direction: "bottom" for the newest lines, "top" for the oldest.

        Returns:
            Result wrapping a TerminalState (``.text`` holds the decoded output).
        """
        request = GetStateRequest(id=self.id, new_only=new_only, max_lines=max_lines, direction=direction)
        reply = await self._connection.send_request(request.to_message())
        if is_error_reply(reply) or reply.get("type") != MessageType.TERMINAL_STATE.value:
            return Result.failure(reply)
        return Result.success(TerminalState.model_validate(reply))

    async def close(self, force: bool = True) -> Result[None]:
        """Close the terminal. Closing an already closed terminal succeeds."""
        if not self.alive:
            return Result.success()
        reply = await self._connection.send_request(create_close_message(self.id, force))
        if is_error_reply(reply):
            return Result.failure(reply)
        self._mark_closed()
        return Result.success()


# ============================================================================
# TERMINAL MANAGER
# ============================================================================

class TerminalManager:
    """
    Terminal operations over a shared connection.

    The authoritative terminal list lives on the sandbox; handles created
    here are tracked only so their event handlers can be released.
    """

    def __init__(self, connection: ConnectionManager, logger: Optional[logging.Logger] = None):
        self.connection = connection
        self._logger = logger or logging.getLogger(__name__)
        self._terminals: Dict[int, List[Terminal]] = {}

    async def _ensure_connected(self) -> None:
        if not self.connection.connected:
            await self.connection.connect()

    def _attach(
        self,
        terminal_id: int,
        on_data: Optional[DataCallback],
        on_exit: Optional[ExitCallback],
    ) -> Terminal:
        terminal = Terminal(
            self.connection,
            terminal_id,
            on_data=on_data,
            on_exit=on_exit,
            manager=self,
            logger=self._logger,
        )
        self._terminals.setdefault(terminal_id, []).append(terminal)
        return terminal

    def _forget(self, terminal: Terminal) -> None:
        handles = self._terminals.get(terminal.id)
        if handles and terminal in handles:
            handles.remove(terminal)
            if not handles:
                del self._terminals[terminal.id]

    def _release(self, terminal_id: int) -> None:
        for terminal in self._terminals.pop(terminal_id, []):
            terminal._mark_closed()

    async def execute(
        self,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        timeout: int = 30000,
        terminal_id: int = 0,
    ) -> Result[ExecResult]:
        """
        Run a command to completion and collect its output.

        Args:
            command: Command to execute (required).
            args: Command arguments.
            cwd: Working directory.
            timeout: Command timeout in milliseconds.
            terminal_id: Terminal id used for the task.

        Returns:
            Result wrapping ExecResult(exit_code, signal, logs).

        Raises:
            ValueError: If command is empty.
            RequestTimeout: If no reply arrives; the task terminal is
                force-closed before this propagates. Cancellation of the
                caller closes it the same way.

        Example:
            >>> result = await terminals.execute("echo", args=["ok"])
            >>> result.unwrap().logs
            'ok\\n'
        """
        if not command:
            raise ValueError("command is required")

        await self._ensure_connected()

        request = TerminalCreateRequest(
            terminal_id=terminal_id,
            command=command,
            args=list(args or []),
            cwd=cwd or None,
            task=True,
            force=True,
            with_logs=True,
            await_finish=True,
            timeout=timeout,
        )
        wait = max(self.connection.config.request_timeout, timeout / 1000.0 + EXECUTE_GRACE_SECONDS)

        try:
            reply = await self.connection.send_request(request.to_message(), timeout=wait)
        except (RequestTimeout, asyncio.CancelledError) as e:
            reason = "timed out" if isinstance(e, RequestTimeout) else "was cancelled"
            self._logger.warning(f"Execution of {command!r} {reason}, closing terminal {terminal_id}")
            try:
                self.connection.send(create_close_message(terminal_id, force=True))
            except NotConnected:
                pass
            raise

        if is_error_reply(reply):
            self._logger.warning(f"Execution of {command!r} failed: {reply}")
            return Result.failure(reply)
        return Result.success(parse_exec_result(reply))

    async def create(
        self,
        cols: int = 120,
        rows: int = 30,
        cwd: Optional[str] = None,
        terminal_id: Optional[int] = None,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        force: bool = False,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> Result[Terminal]:
        """
        Create an interactive terminal.

        Args:
            cols: Terminal columns.
            rows: Terminal rows.
            cwd: Working directory.
            terminal_id: Requested id (assigned by the sandbox when omitted).
            command: Program to run instead of the default shell.
            args: Program arguments.
            force: Replace an existing terminal with the same id.
            on_data: Output callback (decoded text).
            on_exit: Exit callback (exit code, signal).

        Returns:
            Result wrapping the Terminal handle.
        """
        await self._ensure_connected()

        request = TerminalCreateRequest(
            terminal_id=terminal_id,
            cols=cols,
            rows=rows,
            cwd=cwd or None,
            command=command,
            args=args,
            force=force,
        )
        reply = await self.connection.send_request(request.to_message())
        if is_error_reply(reply):
            self._logger.warning(f"Terminal creation failed: {reply}")
            return Result.failure(reply)

        terminal_id = reply.get("terminalId")
        if not isinstance(terminal_id, int) or isinstance(terminal_id, bool):
            self._logger.warning(f"Terminal created reply without a terminal id: {reply}")
            return Result.failure(reply)

        terminal = self._attach(terminal_id, on_data, on_exit)
        terminal.cols = reply.get("cols", cols)
        terminal.rows = reply.get("rows", rows)
        terminal.cwd = reply.get("cwd", cwd)
        terminal.existing = bool(reply.get("existing", False))
        self._logger.info(f"Terminal {terminal.id} created")
        return Result.success(terminal)

    async def list(self) -> Result[List[Dict[str, Any]]]:
        """Fetch the terminal list from the sandbox."""
        await self._ensure_connected()
        reply = await self.connection.send_request(TerminalListRequest().to_message())
        if is_error_reply(reply):
            return Result.failure(reply)
        return Result.success(reply.get("terminals") or [])

    def get(
        self,
        terminal_id: int,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> Terminal:
        """
        Attach to an existing terminal without a round trip.

        Args:
            terminal_id: Remote terminal id.
            on_data: Output callback.
            on_exit: Exit callback.

        Returns:
            Terminal handle.
        """
        return self._attach(terminal_id, on_data, on_exit)

    async def close(self, terminal_id: int, force: bool = True) -> Result[bool]:
        """
        Close a terminal by id.

        Returns:
            Result.success(True) when the sandbox confirmed the close,
            Result.success(False) for any other non-error reply.
        """
        await self._ensure_connected()
        reply = await self.connection.send_request(create_close_message(terminal_id, force))
        if is_error_reply(reply):
            return Result.failure(reply)
        if reply.get("type") == MessageType.TERMINAL_CLOSED.value:
            self._release(terminal_id)
            return Result.success(True)
        return Result.success(False)

    async def disconnect(self) -> None:
        """Close the shared connection (affects every manager using it)."""
        await self.connection.disconnect()


__all__ = [
    "Terminal",
    "TerminalManager",
    "EXECUTE_GRACE_SECONDS",
]
