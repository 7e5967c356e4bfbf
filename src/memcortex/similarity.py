"""Similarity lookups used by contradiction detection.

Embedding generation happens outside memcortex.  Callers that have vectors
attach them with :meth:`~memcortex.memory.MemoryStore.set_embedding`; the
:class:`StoreSimilarity` provider then answers KNN queries through the
sqlite-vec ``memory_vec`` table.  Memories without an embedding (or a store
without sqlite-vec) fall back to word-overlap Jaccard similarity over a
bounded scan of active memories.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from memcortex.memory import Memory, MemoryQuery, MemoryStore

log = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\s+")
_MIN_WORD_LEN = 4


def significant_words(text: str) -> set[str]:
    """Lowercase whitespace-separated words longer than three characters."""
    return {w for w in _WORD_RE.split(text.lower()) if len(w) >= _MIN_WORD_LEN}


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the significant words in *a* and *b*."""
    words_a = significant_words(a)
    words_b = significant_words(b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


class SimilarityProvider(Protocol):
    """Anything that can rank memories by similarity to a given memory."""

    async def find_similar(
        self,
        memory: Memory,
        limit: int,
        min_similarity: float,
    ) -> list[tuple[Memory, float]]:
        ...


class StoreSimilarity:
    """:class:`SimilarityProvider` backed by the memory store.

    Parameters
    ----------
    memories:
        The memory store to search.
    scan_limit:
        Maximum active memories compared in the lexical fallback.
    """

    def __init__(self, memories: MemoryStore, scan_limit: int = 2_000) -> None:
        self._memories = memories
        self._scan_limit = scan_limit

    async def find_similar(
        self,
        memory: Memory,
        limit: int,
        min_similarity: float,
    ) -> list[tuple[Memory, float]]:
        """Active memories at least *min_similarity* alike, most similar first.

        The memory itself is never part of the result.
        """
        embedding = await self._memories.get_embedding(memory.id)
        if embedding is not None:
            return await self._vector_similar(memory, embedding, limit, min_similarity)
        return await self._lexical_similar(memory, limit, min_similarity)

    async def _vector_similar(
        self,
        memory: Memory,
        embedding: bytes,
        limit: int,
        min_similarity: float,
    ) -> list[tuple[Memory, float]]:
        # One extra neighbour: the memory matches itself at distance 0.
        neighbours = await self._memories.nearest(embedding, limit + 1)
        scores = {
            mid: score
            for mid, score in neighbours
            if mid != memory.id and score >= min_similarity
        }
        found = await self._memories.read_many(scores)
        ranked = [
            (found[mid], score)
            for mid, score in scores.items()
            if mid in found and not found[mid].archived
        ]
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked[:limit]

    async def _lexical_similar(
        self,
        memory: Memory,
        limit: int,
        min_similarity: float,
    ) -> list[tuple[Memory, float]]:
        text = memory.searchable_text()
        if not significant_words(text):
            return []
        candidates = await self._memories.search(
            MemoryQuery(exclude_ids=(memory.id,)),
            limit=self._scan_limit,
        )
        ranked: list[tuple[Memory, float]] = []
        for candidate in candidates:
            score = text_similarity(text, candidate.searchable_text())
            if score >= min_similarity:
                ranked.append((candidate, score))
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        log.debug("Lexical similarity found %d candidates for %s", len(ranked), memory.id)
        return ranked[:limit]
