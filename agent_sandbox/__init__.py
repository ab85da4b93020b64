"""
agent-sandbox: persistent duplex session client for remote sandboxes.

One WebSocket per sandbox carries request/response calls, any number of
interactive terminals and a file change feed, and survives transport
failures through automatic reconnection.

Usage:
    from agent_sandbox import SandboxClient

    async with SandboxClient(token="...") as sandbox:
        result = await sandbox.terminal.execute("ls", args=["-la"])
        print(result.unwrap().logs)
"""

from agent_sandbox.client import SandboxClient
from agent_sandbox.core.errors import (
    SandboxError,
    NotConnected,
    SandboxTimeout,
    ConnectTimeout,
    RequestTimeout,
    ConnectionClosed,
    EnvironmentUnavailable,
    ReconnectFailed,
    TransportError,
    RemoteError,
    Result,
)
from agent_sandbox.core.events import EventType, EventRegistry
from agent_sandbox.core.settings import ConnectionConfig, DEFAULT_BASE_URL
from agent_sandbox.managers.terminal import Terminal, TerminalManager
from agent_sandbox.managers.watcher import ChangeKind, WatcherManager
from agent_sandbox.websocket.connection import ConnectionManager, ConnectionState
from agent_sandbox.websocket.models import ExecResult, TerminalState

__version__ = "0.1.0"

__all__ = [
    # Client
    "SandboxClient",
    # Session
    "ConnectionManager",
    "ConnectionState",
    "ConnectionConfig",
    "DEFAULT_BASE_URL",
    "EventType",
    "EventRegistry",
    # Managers
    "Terminal",
    "TerminalManager",
    "ChangeKind",
    "WatcherManager",
    # Models
    "ExecResult",
    "TerminalState",
    # Errors
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
]
