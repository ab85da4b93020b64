"""
Sandbox Client for agent-sandbox.

Entry point for driving one remote sandbox. Owns the shared Connection
Manager and exposes the terminal and file-watcher managers built on it.

Usage:
    async with SandboxClient(token="...", sandbox_id="sb_123") as sandbox:
        result = await sandbox.terminal.execute("npm", args=["install"])
        print(result.unwrap().logs)
"""

import logging
from typing import Any, Callable, Optional

from agent_sandbox.core.settings import DEFAULT_BASE_URL, ConnectionConfig
from agent_sandbox.managers.terminal import TerminalManager
from agent_sandbox.managers.watcher import WatcherManager
from agent_sandbox.websocket.connection import ConnectionManager


class SandboxClient:
    """
    Client for one sandbox.

    Attributes:
        terminal: TerminalManager on the shared connection.
        watcher: WatcherManager on the shared connection.
        connection: The underlying ConnectionManager.
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        sandbox_id: Optional[str] = None,
        sandbox_name: Optional[str] = None,
        status_check: Optional[Callable[[], Any]] = None,
        config: Optional[ConnectionConfig] = None,
        logger: Optional[logging.Logger] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize the client (does not connect).

        Args:
            token: Sandbox bearer token (required).
            base_url: Sandbox base URL.
            sandbox_id: Sandbox id.
            sandbox_name: Human-readable sandbox name.
            status_check: Liveness predicate consulted before connecting.
            config: Connection tunables.
            logger: Logger shared by the connection and managers.
            transport_factory: Transport override (tests).

        Raises:
            ValueError: If token is empty.
        """
        if not token:
            raise ValueError("token is required")

        self.base_url = base_url
        self.token = token
        self.sandbox_id = sandbox_id
        self.sandbox_name = sandbox_name

        self.connection = ConnectionManager(
            base_url,
            token,
            sandbox_id=sandbox_id,
            status_check=status_check,
            config=config,
            logger=logger,
            transport_factory=transport_factory,
        )
        self.terminal = TerminalManager(self.connection, logger=logger)
        self.watcher = WatcherManager(self.connection, logger=logger)

    def __repr__(self) -> str:
        name = self.sandbox_name or self.sandbox_id or self.base_url
        return f"SandboxClient({name!r}, connected={self.connected})"

    @property
    def connected(self) -> bool:
        return self.connection.connected

    async def connect(self) -> None:
        """Open the shared connection (no-op when already connected)."""
        await self.connection.connect()

    async def disconnect(self) -> None:
        """Stop the watcher and close the shared connection."""
        self.watcher.stop()
        await self.connection.disconnect()

    async def __aenter__(self) -> "SandboxClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()


__all__ = ["SandboxClient"]
