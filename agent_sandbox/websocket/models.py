"""
WebSocket Protocol Models for agent-sandbox.

Defines Pydantic models for the messages the session layer sends to the
sandbox and the replies it reads back. Outbound messages are plain JSON
objects discriminated by ``action`` (calls), ``a`` (terminal input/resize
shorthand) or ``type`` (change-feed control). Replies carry a ``type`` tag
and echo the caller's ``requestId``.

Protocol Overview:
- Client -> Server: terminal_create, terminal_close, terminal_list,
  get_state, i (input), r (resize), watch, stop_watch
- Server -> Client: connected, terminal_created, terminal_closed,
  terminal_list, terminal_state, terminal_resized, terminal_error,
  terminal_exited, watch_add, watch_change, watch_unlink, watch_error
- Binary frames: [channel id byte][terminal output bytes]
"""

import base64
import binascii
from enum import Enum
from typing import Optional, Dict, Any, List, FrozenSet, Literal

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# MESSAGE TYPES
# ============================================================================

class Action(str, Enum):
    """Client -> Server message discriminators."""

    TERMINAL_CREATE = "terminal_create"
    TERMINAL_CLOSE = "terminal_close"
    TERMINAL_LIST = "terminal_list"
    GET_STATE = "get_state"
    INPUT = "i"
    RESIZE = "r"
    WATCH = "watch"
    STOP_WATCH = "stop_watch"


class MessageType(str, Enum):
    """Server -> Client message types."""

    CONNECTED = "connected"
    TERMINAL_CREATED = "terminal_created"
    TERMINAL_CLOSED = "terminal_closed"
    TERMINAL_LIST = "terminal_list"
    TERMINAL_STATE = "terminal_state"
    TERMINAL_RESIZED = "terminal_resized"
    TERMINAL_ERROR = "terminal_error"
    TERMINAL_EXITED = "terminal_exited"
    WATCH_ADD = "watch_add"
    WATCH_CHANGE = "watch_change"
    WATCH_UNLINK = "watch_unlink"
    WATCH_ERROR = "watch_error"


REQUEST_ID_FIELD = "requestId"

# Reply types that resolve a call, keyed by the call's action. Replies with
# the same requestId but another type (e.g. progress) are not consumed.
EXPECTED_REPLY_TYPES: Dict[str, FrozenSet[str]] = {
    Action.TERMINAL_CREATE.value: frozenset({"terminal_created", "terminal_error"}),
    Action.TERMINAL_CLOSE.value: frozenset({"terminal_closed", "terminal_error"}),
    Action.TERMINAL_LIST.value: frozenset({"terminal_list", "terminal_error"}),
    Action.GET_STATE.value: frozenset({"terminal_state", "terminal_error"}),
    Action.RESIZE.value: frozenset({"terminal_resized", "terminal_error"}),
}


def message_tag(message: Dict[str, Any]) -> Optional[str]:
    """
    Discriminator of a message: ``type``, else ``action``, else ``a``.

    Args:
        message: Parsed message dict.

    Returns:
        Tag string, or None if the message carries none.
    """
    for key in ("type", "action", "a"):
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def expected_reply_types(message: Dict[str, Any]) -> Optional[FrozenSet[str]]:
    """Default reply-type filter for an outbound call, if one is known."""
    action = message.get("action") or message.get("a")
    if not isinstance(action, str):
        return None
    return EXPECTED_REPLY_TYPES.get(action)


# ============================================================================
# BASE MODEL
# ============================================================================

class WireModel(BaseModel):
    """
    Base for wire messages.

    Python attribute names are snake_case; the wire uses camelCase aliases.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    def to_message(self) -> Dict[str, Any]:
        """Serialize to the JSON-ready wire dict (aliases, no None fields)."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================================================
# CLIENT -> SERVER MESSAGES
# ============================================================================

class TerminalCreateRequest(WireModel):
    """
    terminal_create call.

    Attributes:
        terminal_id: Requested id (server assigns one when omitted).
        cols: Terminal columns.
        rows: Terminal rows.
        cwd: Working directory.
        command: Command to run instead of the default shell.
        args: Command arguments.
        task: Run as a one-shot task.
        force: Replace an existing terminal with the same id.
        with_logs: Include base64 logs in the reply (execute).
        await_finish: Reply only after the command exits (execute).
        timeout: Command timeout in milliseconds (execute).
    """

    action: Literal["terminal_create"] = "terminal_create"
    terminal_id: Optional[int] = Field(default=None, alias="terminalId")
    cols: int = Field(default=120, ge=1)
    rows: int = Field(default=30, ge=1)
    cwd: Optional[str] = None
    command: Optional[str] = None
    args: Optional[List[str]] = None
    task: Optional[bool] = None
    force: bool = False
    with_logs: Optional[bool] = Field(default=None, alias="withLogs")
    await_finish: Optional[bool] = Field(default=None, alias="awaitFinish")
    timeout: Optional[int] = Field(default=None, ge=0)


class TerminalCloseRequest(WireModel):
    """terminal_close call."""

    action: Literal["terminal_close"] = "terminal_close"
    terminal_id: int = Field(..., alias="terminalId")
    force: bool = True


class TerminalListRequest(WireModel):
    """terminal_list call."""

    action: Literal["terminal_list"] = "terminal_list"


class GetStateRequest(WireModel):
    """get_state call (snapshot of recent terminal output)."""

    action: Literal["get_state"] = "get_state"
    id: int
    new_only: bool = Field(default=False, alias="newOnly")
    max_lines: int = Field(default=100, ge=1, alias="maxLines")
    direction: Literal["top", "bottom"] = "bottom"


class InputMessage(WireModel):
    """Fire-and-forget terminal input."""

    a: Literal["i"] = "i"
    id: int
    d: str


class ResizeRequest(WireModel):
    """Terminal resize call."""

    a: Literal["r"] = "r"
    id: int
    cols: int = Field(..., ge=1)
    rows: int = Field(..., ge=1)


class WatchRequest(WireModel):
    """Start the change feed."""

    type: Literal["watch"] = "watch"
    ignore_patterns: List[str] = Field(default_factory=list, alias="ignorePatterns")


class StopWatchRequest(WireModel):
    """Stop the change feed."""

    type: Literal["stop_watch"] = "stop_watch"


# ============================================================================
# SERVER -> CLIENT PAYLOADS
# ============================================================================

class TerminalState(WireModel):
    """
    Payload of a terminal_state reply.

    Attributes:
        state: Base64-encoded output snapshot.
        new_only: Whether only content since the last fetch was requested.
        has_new_content: Whether there was new content since the last fetch.
        lines_count: Number of lines in the snapshot.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: str = ""
    new_only: bool = Field(default=False, alias="newOnly")
    has_new_content: Optional[bool] = Field(default=None, alias="hasNewContent")
    lines_count: Optional[int] = Field(default=None, alias="linesCount")

    @property
    def text(self) -> str:
        """Snapshot decoded as UTF-8 text."""
        return decode_base64_text(self.state)


class ExecResult(WireModel):
    """
    Outcome of a one-shot terminal execution.

    Attributes:
        exit_code: Process exit status.
        signal: Terminating signal number (0 if none).
        logs: Combined stdout/stderr, decoded.
    """

    exit_code: int = Field(default=0, alias="exitCode")
    signal: int = 0
    logs: str = ""


def _exit_field(reply: Dict[str, Any], field: str) -> int:
    # exit info is nested in one of: exit.code.<field>, exit.code / exit.signal, <field>
    exit_info = reply.get("exit")
    if isinstance(exit_info, dict):
        code = exit_info.get("code")
        if isinstance(code, dict) and code.get(field):
            return int(code[field])
        if field == "exitCode" and isinstance(code, (int, float)) and code:
            return int(code)
        if field == "signal" and exit_info.get("signal"):
            return int(exit_info["signal"])
    value = reply.get(field)
    if isinstance(value, (int, float)) and value:
        return int(value)
    return 0


def parse_exec_result(reply: Dict[str, Any]) -> ExecResult:
    """
    Build an ExecResult from a terminal_created reply of an awaited task.

    Args:
        reply: The reply dict.

    Returns:
        ExecResult with decoded logs.
    """
    return ExecResult(
        exit_code=_exit_field(reply, "exitCode"),
        signal=_exit_field(reply, "signal"),
        logs=decode_base64_text(reply.get("logs") or ""),
    )


def decode_base64_text(data: str) -> str:
    """
    Decode base64 to UTF-8 text, replacing undecodable bytes.

    Args:
        data: Base64 string (may be empty).

    Returns:
        Decoded text; an empty string for empty or malformed input.
    """
    if not data:
        return ""
    try:
        raw = base64.b64decode(data)
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def create_input_message(terminal_id: int, data: str) -> Dict[str, Any]:
    """Create a terminal input message."""
    return InputMessage(id=terminal_id, d=data).to_message()


def create_resize_message(terminal_id: int, cols: int, rows: int) -> Dict[str, Any]:
    """Create a terminal resize message."""
    return ResizeRequest(id=terminal_id, cols=cols, rows=rows).to_message()


def create_close_message(terminal_id: int, force: bool = True) -> Dict[str, Any]:
    """Create a terminal_close message."""
    return TerminalCloseRequest(terminal_id=terminal_id, force=force).to_message()


def create_watch_message(ignore_patterns: Optional[List[str]] = None) -> Dict[str, Any]:
    """Create a watch (start change feed) message."""
    return WatchRequest(ignore_patterns=list(ignore_patterns or [])).to_message()


def create_stop_watch_message() -> Dict[str, Any]:
    """Create a stop_watch message."""
    return StopWatchRequest().to_message()


__all__ = [
    # Enums
    "Action",
    "MessageType",
    # Constants
    "REQUEST_ID_FIELD",
    "EXPECTED_REPLY_TYPES",
    # Models
    "WireModel",
    "TerminalCreateRequest",
    "TerminalCloseRequest",
    "TerminalListRequest",
    "GetStateRequest",
    "InputMessage",
    "ResizeRequest",
    "WatchRequest",
    "StopWatchRequest",
    "TerminalState",
    "ExecResult",
    # Helper functions
    "message_tag",
    "expected_reply_types",
    "parse_exec_result",
    "decode_base64_text",
    "create_input_message",
    "create_resize_message",
    "create_close_message",
    "create_watch_message",
    "create_stop_watch_message",
]
