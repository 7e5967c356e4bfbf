"""Hierarchical compression of memories.

Every memory can be rendered at three levels:

- **summary** (~20 tokens): the stored summary, or a one-line default built
  from the type's headline payload fields.
- **expanded** (~100 tokens): the summary plus labelled lines for the
  type's most informative payload fields.
- **full**: the complete record as JSON.  :func:`parse_full` reads it back
  without field loss.

Retrieval renders memories at the level a caller asks for; consolidation
uses the same levels to shrink stored payloads (see
:meth:`HierarchicalCompressor.compact`).

Usage::

    from memcortex.compression import HierarchicalCompressor

    compressor = HierarchicalCompressor()
    result = compressor.compress(memory)
    print(result.summary_tokens, result.expanded_tokens, result.full_tokens)
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from memcortex.memory import Memory

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CHARS_PER_TOKEN = 4
"""Rough approximation: ~4 characters per token for English text."""

LEVELS: tuple[str, ...] = ("summary", "expanded", "full")

_EXPANDED_FIELDS: dict[str, tuple[tuple[str, str], ...]] = {
    "core": (("Project", "project"), ("Stack", "tech_stack")),
    "tribal": (("Topic", "topic"), ("Knowledge", "knowledge"), ("Warnings", "warnings")),
    "procedural": (("Procedure", "name"), ("Steps", "steps")),
    "semantic": (("Topic", "topic"), ("Knowledge", "knowledge")),
    "episodic": (("Query", "user_query"), ("Outcome", "outcome")),
    "decision": (("Decision", "decision"), ("Rationale", "rationale")),
    "insight": (("Insight", "insight"), ("Source", "source")),
    "reference": (("Reference", "title"), ("Location", "url")),
    "preference": (("Preference", "preference"), ("Scope", "scope")),
    "pattern_rationale": (("Pattern", "pattern_name"), ("Rationale", "rationale")),
    "constraint_override": (("Constraint", "constraint_name"), ("Reason", "reason")),
    "code_smell": (("Smell", "name"), ("Reason", "reason"), ("Suggestion", "suggestion")),
    "decision_context": (("Decision", "decision_summary"), ("Context", "business_context")),
    "agent_spawn": (
        ("Agent", "name"),
        ("Description", "description"),
        ("Tools", "tools"),
        ("Triggers", "trigger_patterns"),
    ),
    "entity": (
        ("Entity", "name"),
        ("Kind", "entity_type"),
        ("Status", "status"),
        ("Facts", "key_facts"),
        ("Warnings", "warnings"),
    ),
    "goal": (
        ("Goal", "title"),
        ("Status", "status"),
        ("Progress", "progress"),
        ("Description", "description"),
        ("Blockers", "blockers"),
    ),
    "feedback": (
        ("Type", "feedback_type"),
        ("Correction", "correction"),
        ("Rule", "extracted_rule"),
    ),
    "workflow": (("Workflow", "name"), ("Steps", "steps"), ("Triggers", "trigger_phrases")),
    "conversation": (
        ("Conversation", "title"),
        ("Participants", "participants"),
        ("Summary", "conversation_summary"),
        ("Decisions", "key_decisions"),
    ),
    "incident": (
        ("Incident", "title"),
        ("Severity", "severity"),
        ("Impact", "impact"),
        ("Root cause", "root_cause"),
        ("Lessons", "lessons_learned"),
    ),
    "meeting": (
        ("Meeting", "title"),
        ("Type", "meeting_type"),
        ("Summary", "meeting_summary"),
        ("Decisions", "decisions"),
    ),
    "skill": (
        ("Skill", "name"),
        ("Domain", "domain"),
        ("Level", "proficiency_level"),
        ("Principles", "key_principles"),
    ),
    "environment": (
        ("Environment", "name"),
        ("Type", "environment_type"),
        ("Warnings", "warnings"),
        ("Access", "access_instructions"),
    ),
}
"""Per-type (label, payload key) pairs rendered at the expanded level."""

_SUMMARY_ICONS: dict[str, str] = {
    "core": "🏠",
    "tribal": "⚠️",
    "procedural": "📋",
    "semantic": "💡",
    "episodic": "💭",
    "decision": "⚖️",
    "insight": "🔎",
    "reference": "🔗",
    "preference": "👍",
    "pattern_rationale": "🎯",
    "constraint_override": "✅",
    "code_smell": "🚫",
    "decision_context": "📝",
    "agent_spawn": "🤖",
    "entity": "📦",
    "goal": "🎯",
    "feedback": "📝",
    "workflow": "📋",
    "conversation": "💬",
    "incident": "🚨",
    "meeting": "📅",
    "skill": "🧠",
    "environment": "🌍",
}


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


def estimate_tokens(obj: Any) -> int:
    """Estimate tokens as ``ceil(chars / 4)``.

    Strings are measured directly; anything else is measured by its JSON
    serialisation.
    """
    if isinstance(obj, Memory):
        obj = obj.to_dict()
    text = obj if isinstance(obj, str) else json.dumps(obj, default=str)
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        rendered = []
        for item in value:
            if isinstance(item, dict):
                rendered.append(str(item.get("action") or item.get("name") or item))
            else:
                rendered.append(str(item))
        return "; ".join(rendered)
    return str(value)


# ---------------------------------------------------------------------------
# Compression result
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CompressionResult:
    """All three renderings of one memory with their token estimates."""

    summary: str
    expanded: str
    full: str
    summary_tokens: int
    expanded_tokens: int
    full_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "expanded": self.expanded,
            "full": self.full,
            "summary_tokens": self.summary_tokens,
            "expanded_tokens": self.expanded_tokens,
            "full_tokens": self.full_tokens,
        }


# ---------------------------------------------------------------------------
# Compressor
# ---------------------------------------------------------------------------


class HierarchicalCompressor:
    """Renders memories at summary, expanded and full levels."""

    def compress(self, memory: Memory) -> CompressionResult:
        summary = self.render(memory, "summary")
        expanded = self.render(memory, "expanded")
        full = self.render(memory, "full")
        return CompressionResult(
            summary=summary,
            expanded=expanded,
            full=full,
            summary_tokens=estimate_tokens(summary),
            expanded_tokens=estimate_tokens(expanded),
            full_tokens=estimate_tokens(full),
        )

    def render(self, memory: Memory, level: str) -> str:
        """Render *memory* at *level*.

        Raises
        ------
        ValueError
            If *level* is not one of :data:`LEVELS`.
        """
        if level == "summary":
            return memory.summary or self.default_summary(memory)
        if level == "expanded":
            return self._expanded(memory)
        if level == "full":
            return json.dumps(memory.to_dict(), ensure_ascii=False, sort_keys=True)
        raise ValueError(f"Invalid level {level!r}. Must be one of: {', '.join(LEVELS)}")

    def _expanded(self, memory: Memory) -> str:
        lines = [memory.summary or self.default_summary(memory)]
        for label, key in _EXPANDED_FIELDS.get(memory.type, ()):
            value = memory.payload.get(key)
            if value in (None, "", [], ()):
                continue
            if key == "steps" and isinstance(value, list):
                lines.append(f"{label}: {len(value)}")
                first = value[0]
                first_action = first.get("action") if isinstance(first, dict) else first
                if first_action:
                    lines.append(f"First step: {first_action}")
                continue
            lines.append(f"{label}: {_format_value(value)}")
        return "\n".join(lines)

    @staticmethod
    def default_summary(memory: Memory) -> str:
        """One-line summary built from the type's headline payload fields."""
        icon = _SUMMARY_ICONS.get(memory.type, "•")
        fields = _EXPANDED_FIELDS.get(memory.type, ())
        values = [
            _format_value(memory.payload[key])
            for _label, key in fields
            if memory.payload.get(key) not in (None, "", [], ())
        ]
        if not values:
            return f"{icon} {memory.type.replace('_', ' ').capitalize()}"
        if len(values) == 1:
            return f"{icon} {values[0][:50]}"
        detail = values[1]
        if len(detail) > 50:
            detail = detail[:50] + "..."
        return f"{icon} {values[0]}: {detail}"

    def compact(self, memory: Memory, level: str) -> tuple[str, dict[str, Any]]:
        """Stored ``(summary, payload)`` for *memory* demoted to *level*.

        ``expanded`` keeps only the payload keys rendered at the expanded
        level; ``summary`` drops the payload entirely.  The full record is
        expected to be moved to cold storage by the caller.
        """
        summary = memory.summary or self.default_summary(memory)
        if level == "expanded":
            keep = {key for _label, key in _EXPANDED_FIELDS.get(memory.type, ())}
            return summary, {k: v for k, v in memory.payload.items() if k in keep}
        if level == "summary":
            return summary, {}
        raise ValueError(f"Cannot compact to level {level!r}")


def parse_full(text: str) -> Memory:
    """Parse the ``full`` rendering back into a :class:`Memory`."""
    return Memory.from_dict(json.loads(text))
