"""
agent-sandbox - Persistent duplex session client for remote sandboxes
Main entry point for the command line interface
"""
import sys

from agent_sandbox.cli import main


if __name__ == "__main__":
    sys.exit(main())
