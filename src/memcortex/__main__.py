"""Entry point for ``python -m memcortex``.

Dispatches to CLI commands (health, status, consolidate, feedback,
validate, backup) or starts the MCP server over stdio transport if no CLI
command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    from memcortex.cli import COMMANDS

    if args and args[0] in COMMANDS:
        from memcortex.cli import dispatch
        dispatch(args)
        return

    # SQLite WAL plus the consolidation advisory lock make several server
    # processes on one database safe.
    from memcortex.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
