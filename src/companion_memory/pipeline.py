"""Memory formation pipeline.

Turns one full chat window into one persisted memory through explicit
stages:

    summarize -> score -> embed -> persist

Summarization fails open: when the summarizer raises (other than for
malformed output) or returns an empty summary, a truncated transcript
is used instead. Everything after that fails closed: an embedding or
storage failure aborts the run and leaves the window un-summarized so it
is retried later.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger

from .config import MemoryConfig
from .exceptions import (
    EmbeddingError,
    MalformedSummaryError,
    SummarizationError,
)
from .interfaces import Embedder, EmotionStateRepo, MemoryRepo, Summarizer
from .models import ChatWindow, EmotionState, Memory, MemorySummary, MemoryType, Scope, TimeRange
from .salience import SalienceScorer, clamp_salience


@dataclass
class SummaryResult:
    """Output of the summarize stage."""

    summary: MemorySummary
    structured: bool


def build_embedding_text(
    summary: str, facts: list[str], commitments: list[str]
) -> str:
    """Concatenate the high-value fields that get embedded."""
    parts = [summary]
    if facts:
        parts.append("facts: " + " ; ".join(facts))
    if commitments:
        parts.append("commitments: " + " ; ".join(commitments))
    return "\n".join(parts)


class MemoryFormationPipeline:
    """Summarization trigger for full chat windows."""

    def __init__(
        self,
        summarizer: Summarizer,
        embedder: Embedder,
        memories: MemoryRepo,
        config: MemoryConfig | None = None,
        emotion_states: EmotionStateRepo | None = None,
        scorer: SalienceScorer | None = None,
    ):
        """Initialize the pipeline.

        Args:
            summarizer: Summarizer capability
            embedder: Embedder capability (document mode is used)
            memories: Memory repository; ``commit_memory`` must be atomic
            config: Memory configuration
            emotion_states: Optional source of emotion context for scoring
            scorer: Salience scorer (built from config if omitted)
        """
        self._config = config or MemoryConfig()
        self._summarizer = summarizer
        self._embedder = embedder
        self._memories = memories
        self._emotion_states = emotion_states
        self._scorer = scorer or SalienceScorer(self._config.salience)

    async def run(self, window: ChatWindow) -> Memory:
        """Summarize, score, embed and persist one window.

        Raises:
            SummarizationError: the window could not be turned into a memory
                and remains un-summarized
        """
        if window.id is None:
            raise ValueError("window must be persisted before summarization")

        logger.info(
            f"Summarizing window {window.id} for {window.scope.key} "
            f"({window.turn_count} turns)"
        )
        try:
            result = await self.summarize(window)
            salience = await self.score(result, window)
            embedding = await self.embed(result.summary)
            memory = await self.persist(window, result.summary, salience, embedding)
        except asyncio.CancelledError:
            logger.warning(f"Summarization of window {window.id} cancelled")
            raise
        except Exception as e:
            logger.error(
                f"Memory formation failed for window {window.id}, "
                f"keeping it pending: {e}"
            )
            raise SummarizationError(window.id, e) from e

        logger.info(
            f"Memory {memory.id} stored for window {window.id} "
            f"(salience={memory.salience:.2f})"
        )
        return memory

    async def summarize(self, window: ChatWindow) -> SummaryResult:
        """Call the summarizer, falling back to truncation when it fails."""
        try:
            summary = await self._summarizer.summarize(window.content)
        except MalformedSummaryError:
            raise
        except Exception as e:
            logger.warning(
                f"Summarizer failed for window {window.id}, using truncated "
                f"transcript: {e}"
            )
            return SummaryResult(self._fallback_summary(window), structured=False)

        if not summary.summary.strip():
            logger.warning(
                f"Summarizer returned empty summary for window {window.id}, "
                f"using truncated transcript"
            )
            return SummaryResult(self._fallback_summary(window), structured=False)

        return SummaryResult(summary, structured=True)

    def _fallback_summary(self, window: ChatWindow) -> MemorySummary:
        text = window.content.strip()[:self._config.summarizer.fallback_chars]
        return MemorySummary(
            summary=text,
            time_range=TimeRange(
                start=window.created_at.isoformat(),
                end=datetime.now(timezone.utc).isoformat(),
            ),
        )

    async def score(self, result: SummaryResult, window: ChatWindow) -> float:
        """Salience for the summary.

        A positive score reported by the summarizer wins over the local
        structured score. Fallback summaries are scored from the raw
        transcript.
        """
        if not result.structured:
            return self._scorer.score_transcript(window.content)

        reported = result.summary.salience_score
        if reported is not None and reported > 0:
            return clamp_salience(reported)

        state = await self._emotion_context(window.scope)
        return self._scorer.score(result.summary, state)

    async def _emotion_context(self, scope: Scope) -> EmotionState | None:
        if self._emotion_states is None:
            return None
        try:
            return await self._emotion_states.get_emotion_state(scope)
        except Exception as e:
            logger.warning(f"Failed to load emotion state for {scope.key}: {e}")
            return None

    async def embed(self, summary: MemorySummary) -> list[float]:
        text = build_embedding_text(
            summary.summary, summary.facts, summary.commitments
        )
        try:
            embedding = await self._embedder.embed_document(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        if not embedding:
            raise EmbeddingError("empty embedding response")
        return embedding

    async def persist(
        self,
        window: ChatWindow,
        summary: MemorySummary,
        salience: float,
        embedding: list[float],
    ) -> Memory:
        """Store the memory and mark the window summarized in one commit."""
        memory = Memory(
            scope=window.scope,
            memory_type=MemoryType.CHAT,
            summary=summary.summary,
            facts=summary.facts,
            commitments=summary.commitments,
            emotions=summary.emotions,
            time_range=summary.time_range,
            salience=salience,
            embedding=embedding,
            source_window_id=window.id,
        )
        memory_id = await self._memories.commit_memory(memory, window.id)
        return memory.model_copy(update={"id": memory_id})
