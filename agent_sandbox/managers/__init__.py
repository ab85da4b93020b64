"""
agent-sandbox managers: terminals and the file change feed.
"""

from agent_sandbox.managers.terminal import Terminal, TerminalManager
from agent_sandbox.managers.watcher import ChangeKind, WatcherManager

__all__ = [
    "Terminal",
    "TerminalManager",
    "ChangeKind",
    "WatcherManager",
]
