"""memcortex -- lifecycle engine for long-lived agent memories.

Quick start::

    from memcortex import Cortex

    async def main():
        cortex = Cortex()
        await cortex.initialize()

        await cortex.remember("tribal", "Never retry the payments webhook synchronously")
        context = await cortex.retrieve("fix_bug", "payments webhook")

        await cortex.shutdown()

For lower-level access, import from submodules::

    from memcortex.memory import Memory, MemoryStore, MEMORY_TYPES
    from memcortex.decay import decayed_confidence, TemporalValidator
    from memcortex.consolidation import ConsolidationEngine, ConsolidationResult
    from memcortex.retrieval import RetrievalEngine, INTENTS
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from memcortex.cortex import Cortex
from memcortex.memory import Memory, MEMORY_TYPES, IMPORTANCE_LEVELS
from memcortex.retrieval import INTENTS

__all__ = [
    "__version__",
    "Cortex",
    "Memory",
    "MEMORY_TYPES",
    "IMPORTANCE_LEVELS",
    "INTENTS",
]
