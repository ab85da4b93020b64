"""
agent-sandbox WebSocket Package.

Session layer over one WebSocket: the transport wrapper, the wire models
and the Connection Manager (handshake, correlation, binary channels,
reconnection).
"""

from agent_sandbox.websocket.connection import (
    ConnectionManager,
    ConnectionState,
    PendingCall,
    build_headers,
    build_ws_url,
)
from agent_sandbox.websocket.transport import WebSocketTransport

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "PendingCall",
    "build_headers",
    "build_ws_url",
    "WebSocketTransport",
]
