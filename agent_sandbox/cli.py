"""
agent-sandbox Command Line Interface.

Usage:
    # Store credentials once
    agent-sandbox configure --base-url https://sandbox.example.com --token sk_...

    # Run a command and exit with its exit code
    agent-sandbox exec --cwd /opt/app ls -la

    # List terminals as JSON
    agent-sandbox terminals

    # Stream file changes until interrupted
    agent-sandbox watch --ignore node_modules --ignore .git

Connection settings resolve in order: command line flags, environment
(SANDBOX_BASE_URL, SANDBOX_TOKEN, SANDBOX_ID, also read from a .env file),
then the stored profile.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Callable, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from agent_sandbox.client import SandboxClient
from agent_sandbox.core.errors import SandboxError
from agent_sandbox.core.events import EventType, iter_queue
from agent_sandbox.core.settings import (
    DEFAULT_BASE_URL,
    ConnectionConfig,
    SettingsManager,
    get_settings_manager,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ============================================================================
# ARGUMENTS
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--base-url", type=str, default=None, help="Sandbox base URL")
    common.add_argument("--token", type=str, default=None, help="Sandbox bearer token")
    common.add_argument("--sandbox-id", type=str, default=None, help="Sandbox id")
    common.add_argument("--profile", type=str, default=None, help="Stored profile name")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(
        prog="agent-sandbox",
        description="Drive a remote sandbox over a persistent WebSocket session",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    exec_parser = subparsers.add_parser("exec", parents=[common], help="Run a command and print its output")
    exec_parser.add_argument("--cwd", type=str, default=None, help="Working directory")
    exec_parser.add_argument(
        "--timeout",
        type=int,
        default=30000,
        help="Command timeout in milliseconds (default: 30000)"
    )
    exec_parser.add_argument("program", help="Command to execute")
    exec_parser.add_argument("args", nargs=argparse.REMAINDER, help="Command arguments")

    subparsers.add_parser("terminals", parents=[common], help="List remote terminals as JSON")

    watch_parser = subparsers.add_parser("watch", parents=[common], help="Print file changes until interrupted")
    watch_parser.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Pattern to ignore (repeatable)"
    )

    configure_parser = subparsers.add_parser("configure", parents=[common], help="Store connection settings")
    configure_parser.add_argument("--default", action="store_true", help="Make this the default profile")

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


def resolve_connection(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None,
    settings_manager: Optional[SettingsManager] = None,
) -> Tuple[str, Optional[str], Optional[str]]:
    """
    Resolve base URL, token and sandbox id.

    Args:
        args: Parsed arguments.
        environ: Environment mapping (defaults to os.environ).
        settings_manager: Profile store (defaults to the global one).

    Returns:
        (base_url, token, sandbox_id); token is None when nothing supplies one.
    """
    env = os.environ if environ is None else environ
    profile = (settings_manager or get_settings_manager()).get_profile(args.profile) or {}

    base_url = args.base_url or env.get("SANDBOX_BASE_URL") or profile.get("base_url") or DEFAULT_BASE_URL
    token = args.token or env.get("SANDBOX_TOKEN") or profile.get("token")
    sandbox_id = args.sandbox_id or env.get("SANDBOX_ID") or profile.get("sandbox_id")
    return base_url, token, sandbox_id


# ============================================================================
# COMMANDS
# ============================================================================

async def run_exec(client: SandboxClient, args: argparse.Namespace) -> int:
    """Execute a command, print its logs and return its exit code."""
    result = await client.terminal.execute(
        args.program,
        args=list(args.args),
        cwd=args.cwd,
        timeout=args.timeout,
    )
    if not result.ok:
        print(f"Error: {result.message}", file=sys.stderr)
        return 1

    execution = result.value
    sys.stdout.write(execution.logs)
    sys.stdout.flush()
    if execution.signal:
        logger.info(f"Command terminated by signal {execution.signal}")
    return execution.exit_code


async def run_terminals(client: SandboxClient) -> int:
    """Print the remote terminal list."""
    result = await client.terminal.list()
    if not result.ok:
        print(f"Error: {result.message}", file=sys.stderr)
        return 1
    print(json.dumps(result.value, indent=2))
    return 0


async def run_watch(client: SandboxClient, args: argparse.Namespace) -> int:
    """Print change events until interrupted or the session is lost."""
    queue: asyncio.Queue = asyncio.Queue()

    def enqueue(kind: str) -> Callable[[Optional[str]], None]:
        return lambda path: queue.put_nowait((kind, path))

    client.connection.on(EventType.RECONNECT_FAILED, lambda error: queue.put_nowait(None))
    await client.watcher.start(
        ignore_patterns=args.ignore,
        on_add=enqueue("added"),
        on_change=enqueue("changed"),
        on_remove=enqueue("removed"),
        on_error=enqueue("error"),
    )
    print("Watching for changes (Ctrl+C to stop)...", flush=True)

    async for kind, path in iter_queue(queue):
        print(f"{kind}\t{path}", flush=True)

    print("Session lost, stopping watch", file=sys.stderr)
    return 1


def run_configure(
    args: argparse.Namespace,
    settings_manager: Optional[SettingsManager] = None,
) -> int:
    """Store the supplied connection settings as a profile."""
    if not args.token:
        print("Error: --token is required for configure", file=sys.stderr)
        return 2

    manager = settings_manager or get_settings_manager()
    name = args.profile or "default"
    saved = manager.set_profile(
        name,
        base_url=args.base_url or DEFAULT_BASE_URL,
        token=args.token,
        sandbox_id=args.sandbox_id,
        make_default=args.default or name == "default",
    )
    if not saved:
        print("Error: failed to save settings", file=sys.stderr)
        return 1
    print(f"Profile '{name}' saved to {manager.get_config_file_path()}")
    return 0


async def run_command(client: SandboxClient, args: argparse.Namespace) -> int:
    """
    Run a connection-backed subcommand and disconnect afterwards.

    Args:
        client: Client to use (not yet connected).
        args: Parsed arguments.

    Returns:
        Process exit code.
    """
    try:
        if args.command == "exec":
            return await run_exec(client, args)
        if args.command == "terminals":
            return await run_terminals(client)
        if args.command == "watch":
            return await run_watch(client, args)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await client.disconnect()


# ============================================================================
# ENTRY POINT
# ============================================================================

def main(argv: Optional[List[str]] = None, client_factory: Optional[Callable[..., Any]] = None) -> int:
    """
    CLI entry point.

    Args:
        argv: Arguments (defaults to sys.argv[1:]).
        client_factory: SandboxClient override (tests).

    Returns:
        Process exit code.
    """
    load_dotenv()
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stderr),
        ]
    )

    if args.command == "configure":
        return run_configure(args)

    base_url, token, sandbox_id = resolve_connection(args)
    if not token:
        print(
            "Error: no token configured. Pass --token, set SANDBOX_TOKEN "
            "or run 'agent-sandbox configure'.",
            file=sys.stderr,
        )
        return 2

    factory = client_factory or SandboxClient
    client = factory(
        token,
        base_url,
        sandbox_id=sandbox_id,
        config=ConnectionConfig.from_env(),
    )

    try:
        return asyncio.run(run_command(client, args))
    except KeyboardInterrupt:
        return 130
    except SandboxError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


__all__ = [
    "build_parser",
    "parse_args",
    "resolve_connection",
    "run_exec",
    "run_terminals",
    "run_watch",
    "run_configure",
    "run_command",
    "main",
]
