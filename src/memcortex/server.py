"""MCP server exposing the cortex's lifecycle operations as tools via stdio.

This module is the interface between MCP clients and the
:class:`~memcortex.cortex.Cortex`.  Each tool maps to one Cortex method and
carries a descriptive docstring that helps the calling model choose it.

The ``mcp`` object is imported by :mod:`memcortex.__main__` and launched
with ``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global :pydata:`_cortex` instance is lazily initialised on the
  first tool call via :func:`_ensure_cortex`, which also starts the
  adaptive consolidation scheduler.
* Empty-string parameters from MCP are normalised to ``None`` before
  forwarding to the Cortex.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from memcortex.cortex import Cortex

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and Cortex instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memcortex",
    instructions="Memory lifecycle engine: decay, consolidation, contradictions and intent-weighted retrieval",
)

_cortex = Cortex()


async def _ensure_cortex() -> None:
    """Lazily initialise the cortex (and its scheduler) on the first tool call."""
    if not _cortex.initialized:
        await _cortex.initialize(start_scheduler=True)


def _error_response(err: Exception) -> dict[str, Any]:
    """Structured error dict returned instead of raising into the MCP server."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# MCP Tools
# ===================================================================


@mcp.tool()
async def status() -> dict[str, Any]:
    """Get the memory store's health: token usage, quality metrics and firing triggers.

    Use this to see whether consolidation is due and why. The ``triggers``
    list shows every condition currently met (token pressure, memory count,
    confidence degradation, contradiction density, scheduled fallback).

    Returns:
        A dict with keys:
        - metrics: token usage and quality metrics snapshot
        - memory_count: active (non-archived) memories
        - by_type: active memory count per type
        - triggers: firing consolidation triggers, most urgent first
        - scheduler: scheduler state and last run
        - pending_contradictions: unresolved contradictions in the ledger
        - db_size_mb: database file size in megabytes
    """
    try:
        await _ensure_cortex()
        return await _cortex.status()
    except Exception as exc:
        logger.exception("status failed")
        return _error_response(exc)


@mcp.tool()
async def consolidate(
    aggressiveness: str = "moderate",
    memory_types: list[str] | None = None,
    context_cluster: str = "",
    min_age_days: float | None = None,
    max_confidence: float | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Run a consolidation pass now: archive decayed memories, merge episodes, compress old ones.

    If a pass is already running, this request runs right after it. If
    another request is already waiting, this one is rejected (``skipped``).

    Args:
        aggressiveness: One of 'conservative' (archive only, small batch),
            'moderate' (archive, merge, compress to expanded) or 'aggressive'
            (everything, compress to summary).
        memory_types: Restrict the pass to these memory types.
        context_cluster: Restrict to memories with this tag or linked to
            files under this path prefix.
        min_age_days: Only memories at least this many days old.
        max_confidence: Only memories whose decayed confidence is at most this.
        dry_run: Report what would change without writing anything.

    Returns:
        A dict with counts (archived, merged, summaries_created, compressed,
        tokens_freed), per-action details, and ``skipped``.
    """
    try:
        await _ensure_cortex()
        return await _cortex.consolidate(
            aggressiveness=aggressiveness,
            memory_types=memory_types or None,
            context_cluster=context_cluster or None,
            min_age_days=min_age_days,
            max_confidence=max_confidence,
            dry_run=dry_run,
        )
    except Exception as exc:
        logger.exception("consolidate failed")
        return _error_response(exc)


@mcp.tool()
async def feedback(
    memory_id: str,
    action: str,
    feedback: str = "",
    modification: str = "",
    contradicts: list[str] | None = None,
    confirms: list[str] | None = None,
    auto_detect_contradictions: bool = True,
) -> dict[str, Any]:
    """Confirm, reject or modify a memory. Confidence changes propagate to related memories.

    Args:
        memory_id: The memory to act on.
        action: 'confirm' (+0.1, max 1.0), 'reject' (-0.3, min 0.1) or
            'modify' (-0.1, min 0.3; requires ``modification``).
        feedback: Free-text reason, recorded in the validation history.
        modification: Replacement summary for 'modify'.
        contradicts: Ids of memories this feedback explicitly contradicts.
        confirms: Ids of memories this feedback explicitly confirms.
        auto_detect_contradictions: On reject, also look for similar
            memories making the same claim.

    Returns:
        A dict with success, previous_confidence, new_confidence, message,
        and when present contradictions_detected and confidence_updates.
    """
    try:
        await _ensure_cortex()
        return await _cortex.feedback(
            memory_id=memory_id,
            action=action,
            feedback=feedback or None,
            modification=modification or None,
            contradicts=contradicts,
            confirms=confirms,
            auto_detect_contradictions=auto_detect_contradictions,
        )
    except Exception as exc:
        logger.exception("feedback failed")
        return _error_response(exc)


@mcp.tool()
async def retrieve(
    intent: str,
    focus: str = "",
    budget_tokens: int = 0,
    exclude_ids: list[str] | None = None,
    level: str = "summary",
    types: list[str] | None = None,
) -> dict[str, Any]:
    """Retrieve the memories most useful for a task, fitted to a token budget.

    Args:
        intent: What you are doing. One of: create, investigate, decide,
            recall, learn, plan, summarize, add_feature, fix_bug, refactor,
            security_audit, understand_code, add_test, review_code,
            optimize_performance, write_docs, deploy, migrate,
            debug_incident, onboard, configure_agent, track_goal.
        focus: Free text describing the task; used for relevance.
        budget_tokens: Token ceiling for returned content (0 = default).
        exclude_ids: Memory ids already seen this session.
        level: Detail level per memory: 'summary', 'expanded' or 'full'.
        types: Restrict to these memory types.

    Returns:
        A dict with the ranked memories, tokens_used and candidates_considered.
    """
    try:
        await _ensure_cortex()
        return await _cortex.retrieve(
            intent=intent,
            focus=focus,
            budget_tokens=budget_tokens or None,
            exclude_ids=exclude_ids,
            level=level,
            types=types or None,
        )
    except Exception as exc:
        logger.exception("retrieve failed")
        return _error_response(exc)


@mcp.tool()
async def contradictions(
    status: str = "pending",
    limit: int = 50,
    resolve_id: int = 0,
    resolution: str = "resolved",
) -> dict[str, Any]:
    """List contradictions between memories, or resolve one.

    Args:
        status: 'pending', 'resolved', 'dismissed' or '' for all.
        limit: Maximum entries to return.
        resolve_id: When non-zero, mark this ledger entry instead of listing.
        resolution: 'resolved' or 'dismissed', used with ``resolve_id``.

    Returns:
        A dict with the ledger entries, or the resolution outcome.
    """
    try:
        await _ensure_cortex()
        if resolve_id:
            return await _cortex.resolve_contradiction(resolve_id, resolution)
        return await _cortex.contradictions(status=status or None, limit=limit)
    except Exception as exc:
        logger.exception("contradictions failed")
        return _error_response(exc)


@mcp.tool()
async def validate(memory_id: str = "", limit: int = 100) -> dict[str, Any]:
    """Check memories for staleness: overdue validation or long dormancy.

    Args:
        memory_id: Validate one memory. Leave empty to sweep the oldest
            active memories.
        limit: How many memories a sweep checks.

    Returns:
        For one memory: its decayed confidence and issues. For a sweep:
        ``checked`` and the ``flagged`` memories with their issues.
    """
    try:
        await _ensure_cortex()
        return await _cortex.validate(memory_id or None, limit=limit)
    except Exception as exc:
        logger.exception("validate failed")
        return _error_response(exc)


@mcp.tool()
async def history(limit: int = 20) -> dict[str, Any]:
    """Show recent consolidation runs and what each one did.

    Args:
        limit: Maximum log entries to return, newest first.
    """
    try:
        await _ensure_cortex()
        return await _cortex.history(limit)
    except Exception as exc:
        logger.exception("history failed")
        return _error_response(exc)
