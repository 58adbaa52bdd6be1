"""
Capability interfaces.

Protocols keep the memory pipeline independent of the concrete model
providers and storage engine.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol, runtime_checkable

from .models import (
    ChatMessage,
    ChatWindow,
    EmotionState,
    Memory,
    MemorySummary,
    RetrievedMemory,
    Scope,
)


@runtime_checkable
class Embedder(Protocol):
    """Asymmetric text embedder."""

    async def embed_query(self, text: str) -> list[float]:
        """Embed text used as a search query."""
        ...

    async def embed_document(self, text: str) -> list[float]:
        """Embed text stored for later retrieval."""
        ...


@runtime_checkable
class Summarizer(Protocol):
    """Turns a window transcript into a structured summary."""

    async def summarize(self, window_text: str) -> MemorySummary:
        """
        Summarize a transcript.

        Raises:
            SummarizerError: capability failed or returned nothing
            MalformedSummaryError: output had no decodable JSON object
        """
        ...


@runtime_checkable
class LLMInterface(Protocol):
    """Stateless streaming chat completion."""

    def chat_completion(
        self,
        messages: list[dict],
        system: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream completion text chunks."""
        ...


@runtime_checkable
class ChatHistoryRepo(Protocol):
    """Rolling chat windows and raw messages."""

    async def get_latest_window(self, scope: Scope) -> ChatWindow | None:
        ...

    async def create_window(self, window: ChatWindow) -> ChatWindow:
        ...

    async def append_to_window(
        self,
        window_id: int,
        new_content: str,
        new_turn_count: int,
        expected_turn_count: int,
    ) -> None:
        """Raises WindowConflictError if the stored turn count moved."""
        ...

    async def mark_summarized(self, window_id: int) -> None:
        ...

    async def get_pending_windows(
        self, scope: Scope, trunk_size: int
    ) -> list[ChatWindow]:
        """Full windows that are not summarized yet, oldest first."""
        ...

    async def add_message(self, message: ChatMessage) -> int:
        ...

    async def get_recent(self, scope: Scope, limit: int) -> list[ChatMessage]:
        """Recent raw messages, oldest to newest."""
        ...


@runtime_checkable
class MemoryRepo(Protocol):
    """Persisted memories and similarity search."""

    async def add_memory(self, memory: Memory) -> int:
        ...

    async def commit_memory(self, memory: Memory, window_id: int) -> int:
        """Insert the memory and mark its window summarized atomically."""
        ...

    async def search_similar(
        self,
        scope: Scope,
        embedding: list[float],
        threshold: float,
        memory_type: str | None = None,
        limit: int | None = None,
    ) -> list[RetrievedMemory]:
        """Memories whose cosine similarity exceeds ``threshold``."""
        ...


@runtime_checkable
class EmotionStateRepo(Protocol):
    """Per-scope emotion state persistence."""

    async def get_emotion_state(self, scope: Scope) -> EmotionState | None:
        ...

    async def save_emotion_state(
        self, scope: Scope, state: EmotionState, expected_version: int
    ) -> EmotionState:
        """Raises EmotionConflictError if the stored version moved."""
        ...


@runtime_checkable
class RelationshipRepo(Protocol):
    """Per-scope keyword relationship score."""

    async def get_relationship_score(self, scope: Scope) -> int:
        ...

    async def add_relationship_delta(self, scope: Scope, delta: int) -> int:
        """Apply ``delta`` and return the new score."""
        ...
