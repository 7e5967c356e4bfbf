"""CLI entry points for health checks and one-shot lifecycle operations.

Usage::

    python -m memcortex health
    python -m memcortex status
    python -m memcortex consolidate [--aggressiveness moderate] [--cluster src/billing] [--dry-run]
    python -m memcortex feedback <memory_id> confirm|reject|modify [--feedback "..."] [--modification "..."]
    python -m memcortex validate [<memory_id>] [--limit 100]
    python -m memcortex backup

With no command, ``python -m memcortex`` starts the MCP server instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable

from memcortex.config import get_config
from memcortex.cortex import Cortex


COMMANDS: tuple[str, ...] = (
    "health", "status", "consolidate", "feedback", "validate", "backup",
)


def _flag_value(args: list[str], *flags: str) -> str | None:
    """Value following the first of *flags* present in *args*."""
    for flag in flags:
        if flag in args:
            idx = args.index(flag)
            if idx + 1 < len(args):
                return args[idx + 1]
    return None


def _positional(args: list[str]) -> list[str]:
    """Arguments that are neither flags nor flag values."""
    out: list[str] = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg.startswith("-"):
            skip = arg not in ("--dry-run", "--no-detect")
            continue
        out.append(arg)
    return out


async def _with_cortex(fn: Callable[[Cortex], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    cortex = Cortex()
    await cortex.initialize()
    try:
        return await fn(cortex)
    finally:
        await cortex.shutdown()


def _print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


# ------------------------------------------------------------------
# Health check
# ------------------------------------------------------------------

async def _health() -> str:
    """Run health check and return formatted status."""
    try:
        status = await _with_cortex(lambda c: c.status())
    except Exception as exc:
        return f"Health check failed: {exc}"

    tokens = status["metrics"]["tokens"]
    budget = get_config().scheduler.token_budget
    quality = status["metrics"]["quality"]
    lines = [
        "memcortex health check:",
        f"  memories: {status['memory_count']}",
        f"  tokens: {tokens['total_tokens']} ({tokens['total_tokens'] / budget:.0%} of budget)",
        f"  avg confidence: {quality['avg_confidence']:.2f}",
        f"  pending contradictions: {status['pending_contradictions']}",
        f"  db_size: {status['db_size_mb']:.2f} MB",
        f"  sqlite-vec: {'available' if status['vec_available'] else 'unavailable'}",
    ]
    for trigger in status["triggers"]:
        lines.append(f"  trigger [{trigger['urgency']}] {trigger['type']}: {trigger['reason']}")
    return "\n".join(lines)


def run_health() -> None:
    """Run health check command."""
    print(asyncio.run(_health()))


# ------------------------------------------------------------------
# Status / consolidate / feedback / validate / backup
# ------------------------------------------------------------------

def run_status() -> None:
    _print_json(asyncio.run(_with_cortex(lambda c: c.status())))


def run_consolidate(args: list[str]) -> None:
    """Run a manual consolidation pass."""
    aggressiveness = _flag_value(args, "--aggressiveness", "-a") or "moderate"
    cluster = _flag_value(args, "--cluster", "-c")
    types = _flag_value(args, "--types", "-t")
    min_age = _flag_value(args, "--min-age")
    dry_run = "--dry-run" in args

    try:
        result = asyncio.run(_with_cortex(lambda c: c.consolidate(
            aggressiveness=aggressiveness,
            memory_types=types.split(",") if types else None,
            context_cluster=cluster,
            min_age_days=float(min_age) if min_age else None,
            dry_run=dry_run,
        )))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    _print_json(result)


def run_feedback(args: list[str]) -> None:
    """Run feedback command: confirm, reject or modify a memory."""
    positional = _positional(args)
    if len(positional) < 2:
        print(
            'Usage: memcortex feedback <memory_id> confirm|reject|modify '
            '[--feedback "..."] [--modification "..."] [--contradicts id,id] [--confirms id,id]',
            file=sys.stderr,
        )
        sys.exit(1)

    memory_id, action = positional[0], positional[1].lower()
    contradicts = _flag_value(args, "--contradicts")
    confirms = _flag_value(args, "--confirms")

    try:
        result = asyncio.run(_with_cortex(lambda c: c.feedback(
            memory_id=memory_id,
            action=action,
            feedback=_flag_value(args, "--feedback", "-f"),
            modification=_flag_value(args, "--modification", "-m"),
            contradicts=contradicts.split(",") if contradicts else None,
            confirms=confirms.split(",") if confirms else None,
            auto_detect_contradictions="--no-detect" not in args,
        )))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    _print_json(result)
    if not result.get("success"):
        sys.exit(1)


def run_validate(args: list[str]) -> None:
    """Validate one memory, or sweep the oldest active ones."""
    positional = _positional(args)
    limit = _flag_value(args, "--limit", "-n")
    result = asyncio.run(_with_cortex(lambda c: c.validate(
        positional[0] if positional else None,
        limit=int(limit) if limit else 100,
    )))
    _print_json(result)


def run_backup() -> None:
    """Write a timestamped copy of the database to the backup directory."""
    _print_json(asyncio.run(_with_cortex(lambda c: c.backup())))


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m memcortex``,
        e.g. ``["feedback", "<id>", "confirm"]``.
    """
    if not args:
        return  # Fall through to MCP server.

    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    command = args[0]

    if command == "health":
        run_health()
        sys.exit(0)

    elif command == "status":
        run_status()
        sys.exit(0)

    elif command == "consolidate":
        run_consolidate(args[1:])
        sys.exit(0)

    elif command == "feedback":
        run_feedback(args[1:])
        sys.exit(0)

    elif command == "validate":
        run_validate(args[1:])
        sys.exit(0)

    elif command == "backup":
        run_backup()
        sys.exit(0)

    # Unknown command -- don't exit, fall through to MCP server.
