"""
Error Taxonomy and Result Type for agent-sandbox.

Two failure channels exist in the session layer:

- Transport and timeout failures (no live session, no reply in time,
  session torn down) are raised as exceptions at the awaiting call site.
- Application errors reported by the remote sandbox (e.g. a
  ``terminal_error`` reply) are returned as ``Result.failure(payload)``
  with the payload passed through verbatim. ``Result.unwrap()`` turns
  them into ``RemoteError`` for callers who prefer exceptions.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


# ============================================================================
# EXCEPTIONS
# ============================================================================

class SandboxError(Exception):
    """Base class for every error raised by agent-sandbox."""


class NotConnected(SandboxError):
    """A call was attempted without a live session."""

    def __init__(self, message: str = "WebSocket not connected"):
        super().__init__(message)


class SandboxTimeout(SandboxError):
    """Base class for bounded waits that expired."""


class ConnectTimeout(SandboxTimeout):
    """No handshake arrived within the connect interval."""

    def __init__(self, timeout: float):
        super().__init__(f"Connection timeout - no confirmation received within {timeout}s")
        self.timeout = timeout


class RequestTimeout(SandboxTimeout):
    """No matching reply arrived for a pending call."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"Request timeout after {timeout}s (requestId={request_id})")
        self.request_id = request_id
        self.timeout = timeout


class ConnectionClosed(SandboxError):
    """Pending calls invalidated by session shutdown."""

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)


class EnvironmentUnavailable(SandboxError):
    """The liveness check reported the sandbox as not running."""

    def __init__(self, message: str = "Sandbox is not active"):
        super().__init__(message)


class ReconnectFailed(SandboxError):
    """Reconnection attempts were exhausted."""

    def __init__(self, attempts: int):
        super().__init__(f"Reconnection abandoned after {attempts} attempts")
        self.attempts = attempts


class TransportError(SandboxError):
    """The underlying WebSocket could not be opened or failed mid-flight."""


class RemoteError(SandboxError):
    """
    Application error reported by the remote sandbox.

    Attributes:
        payload: The remote reply, unmodified.
    """

    def __init__(self, payload: Dict[str, Any]):
        self.payload = payload
        super().__init__(error_message(payload))


def error_message(payload: Dict[str, Any]) -> str:
    """
    Extract a human-readable message from a remote error payload.

    Args:
        payload: Remote reply dict.

    Returns:
        The ``message`` or ``error`` field, or a generic fallback.
    """
    error = payload.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    return str(payload.get("message") or error or "Remote operation failed")


def is_error_reply(reply: Dict[str, Any]) -> bool:
    """Check whether a reply is an application-level error."""
    return reply.get("type") == "terminal_error" or bool(reply.get("error"))


# ============================================================================
# RESULT TYPE
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Tagged success/error variant returned by remote terminal operations.

    Attributes:
        ok: Discriminator; True on success.
        value: Success value (None on failure).
        error: Remote error payload, verbatim (None on success).
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Dict[str, Any]) -> "Result[T]":
        return cls(ok=False, error=error)

    @property
    def message(self) -> Optional[str]:
        """Error message for failed results."""
        if self.ok or self.error is None:
            return None
        return error_message(self.error)

    def unwrap(self) -> T:
        """
        Return the success value or raise the remote error.

        Raises:
            RemoteError: If the result is a failure.
        """
        if not self.ok:
            raise RemoteError(self.error or {})
        return self.value

    def __bool__(self) -> bool:
        return self.ok


__all__ = [
    "SandboxError",
    "NotConnected",
    "SandboxTimeout",
    "ConnectTimeout",
    "RequestTimeout",
    "ConnectionClosed",
    "EnvironmentUnavailable",
    "ReconnectFailed",
    "TransportError",
    "RemoteError",
    "Result",
    "error_message",
    "is_error_reply",
]
