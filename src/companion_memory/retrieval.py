"""Memory retrieval with similarity + salience ranking.

Candidates above the similarity threshold are ranked by

    score = similarity_weight * similarity + salience_weight * salience

Equal scores are ordered newest first, then by memory id descending.
"""

from __future__ import annotations

from loguru import logger

from .config import RetrievalConfig
from .interfaces import Embedder, MemoryRepo
from .models import MemoryType, RetrievedMemory, Scope


class MemoryRetriever:
    """Answers "what should I recall right now" for a scope."""

    def __init__(
        self,
        embedder: Embedder,
        memories: MemoryRepo,
        config: RetrievalConfig | None = None,
    ):
        """Initialize retriever.

        Args:
            embedder: Embedder capability (query mode is used)
            memories: Memory repository for similarity search
            config: Retrieval configuration
        """
        self._embedder = embedder
        self._memories = memories
        self._config = config or RetrievalConfig()

    def rank_score(self, similarity: float, salience: float) -> float:
        return (
            self._config.similarity_weight * similarity
            + self._config.salience_weight * salience
        )

    async def search(
        self,
        scope: Scope,
        query: str,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[RetrievedMemory]:
        """Retrieve the most relevant memories for a query.

        Args:
            scope: Scope to search within
            query: Query text; blank queries return nothing without embedding
            top_k: Number of results (defaults to config.top_k)
            threshold: Minimum cosine similarity, exclusive
                (defaults to config.similarity_threshold)

        Returns:
            Ranked list, best first
        """
        if not query or not query.strip():
            return []

        if top_k is None:
            top_k = self._config.top_k
        if threshold is None:
            threshold = self._config.similarity_threshold

        vector = await self._embedder.embed_query(query)
        candidates = await self._memories.search_similar(
            scope, vector, threshold, memory_type=MemoryType.CHAT.value,
        )

        ranked = self.rank(candidates)[:top_k]
        logger.info(
            f"Retrieved {len(ranked)} memories for {scope.key} "
            f"({len(candidates)} above threshold {threshold})"
        )
        return ranked

    def rank(self, candidates: list[RetrievedMemory]) -> list[RetrievedMemory]:
        scored = [
            c.model_copy(update={"rank_score": self.rank_score(c.similarity, c.salience)})
            for c in candidates
        ]
        scored.sort(
            key=lambda c: (c.rank_score, c.created_at.timestamp(), c.memory_id),
            reverse=True,
        )
        return scored


def format_memories_block(
    memories: list[RetrievedMemory], max_entries: int | None = None
) -> str:
    """Render memories as ``- [timestamp] role: text`` lines for a prompt."""
    if max_entries and max_entries > 0:
        memories = memories[:max_entries]

    lines = []
    for memory in memories:
        text = memory.content.strip()
        if not text:
            continue
        stamp = memory.created_at.isoformat(timespec="seconds")
        lines.append(f"- [{stamp}] {memory.role.value}: {text}")
    return "\n".join(lines) + "\n" if lines else ""
