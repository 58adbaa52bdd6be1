"""Memory Service - Facade for the companion memory system.

This module provides the MemoryService class that host applications use.
It wires windowing, memory formation, retrieval and the emotion state
machine together over one SQLite store.

Memory and emotion failures are logged and swallowed here so the host's
conversational turn always continues.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from .background import BackgroundTaskQueue
from .chat_window import AppendResult, ChatWindowAccumulator
from .config import MemoryConfig
from .emotion import EmotionService, EmotionStateMachine, mood_instruction
from .embedding import EmbeddingService
from .exceptions import InvalidSentimentLabelError, SummarizationError
from .interfaces import Embedder, LLMInterface, Summarizer
from .llm import OpenAICompatibleLLM
from .models import (
    ChatMessage,
    ChatWindow,
    EmotionState,
    Memory,
    RetrievedMemory,
    Role,
    Scope,
    SentimentLabel,
)
from .pipeline import MemoryFormationPipeline
from .relationship import RelationshipState, relationship_level, relationship_score_delta
from .retrieval import MemoryRetriever, format_memories_block
from .salience import SalienceScorer
from .sentiment import SentimentAnalyzer, parse_roleplay_output, parse_sentiment_label
from .storage.sqlite_store import SQLiteStore
from .summarizer import LLMSummarizer


class MemoryService:
    """Main companion memory facade.

    Provides:
    - Turn ingestion into rolling windows with automatic summarization
    - Memory search ranked by similarity and salience
    - Emotion state updates from sentiment labels
    - Keyword relationship score updated from user turns
    - Best-effort raw message log for recent history

    Components are lazily initialized on first use; any of them may be
    injected instead.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        store: SQLiteStore | None = None,
        embedder: Embedder | None = None,
        llm: LLMInterface | None = None,
        summarizer: Summarizer | None = None,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            store: Storage backend (SQLite at the configured path if omitted)
            embedder: Embedder (sentence-transformers model if omitted)
            llm: Stateless LLM for summaries and sentiment
            summarizer: Summarizer (LLM-backed if omitted)
        """
        self.config = config or MemoryConfig()
        self._store = store
        self._store_initialized = False
        self._store_lock = asyncio.Lock()
        self._embedder = embedder
        self._llm = llm
        self._summarizer = summarizer
        self._accumulator: ChatWindowAccumulator | None = None
        self._retriever: MemoryRetriever | None = None
        self._emotion: EmotionService | None = None
        self._sentiment: SentimentAnalyzer | None = None
        self._background = BackgroundTaskQueue(self.config.background)

        logger.debug(f"MemoryService full config: {self.config.model_dump()}")
        logger.info(
            f"MemoryService initialized: "
            f"sqlite_db_path={self.config.storage.sqlite_db_path!r}, "
            f"trunk_size={self.config.window.trunk_size}"
        )

    @property
    def background(self) -> BackgroundTaskQueue:
        return self._background

    def set_llm(self, llm: LLMInterface) -> None:
        """Use a shared LLM instance (for example the host agent's)."""
        self._llm = llm
        self._sentiment = None
        if isinstance(self._summarizer, LLMSummarizer):
            self._summarizer = None
            self._accumulator = None
        logger.info("MemoryService using shared LLM")

    async def initialize(self) -> None:
        """Open the store and start the background workers."""
        await self._ensure_store()
        if not self._background.running:
            await self._background.start()

    async def close(self) -> None:
        """Flush background work and close the store."""
        await self._background.stop()
        if self._store and self._store_initialized:
            await self._store.close()
            self._store_initialized = False
            logger.info("MemoryService: SQLiteStore closed")

    async def _ensure_store(self) -> SQLiteStore:
        """Lazy initialization of SQLite store.

        Concurrent first callers share a single ``initialize()``.
        """
        if self._store_initialized:
            return self._store
        async with self._store_lock:
            if self._store is None:
                self._store = SQLiteStore(db_path=self.config.storage.sqlite_db_path)
            if not self._store_initialized:
                await self._store.initialize()
                self._store_initialized = True
        return self._store

    def _ensure_embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = EmbeddingService(config=self.config.embedding)
            logger.debug("EmbeddingService initialized")
        return self._embedder

    def _ensure_llm(self) -> LLMInterface:
        if self._llm is None:
            self._llm = OpenAICompatibleLLM(config=self.config.summarizer)
        return self._llm

    def _ensure_summarizer(self) -> Summarizer:
        if self._summarizer is None:
            self._summarizer = LLMSummarizer(
                llm=self._ensure_llm(), config=self.config.summarizer,
            )
            logger.debug("LLMSummarizer initialized")
        return self._summarizer

    async def _ensure_accumulator(self) -> ChatWindowAccumulator:
        """Lazy initialization of the window accumulator and its pipeline."""
        store = await self._ensure_store()
        if self._accumulator is None:
            pipeline = MemoryFormationPipeline(
                summarizer=self._ensure_summarizer(),
                embedder=self._ensure_embedder(),
                memories=store,
                config=self.config,
                emotion_states=store,
                scorer=SalienceScorer(self.config.salience),
            )
            self._accumulator = ChatWindowAccumulator(
                repo=store, pipeline=pipeline, config=self.config.window,
            )
            logger.debug("ChatWindowAccumulator initialized")
        return self._accumulator

    async def _ensure_retriever(self) -> MemoryRetriever:
        store = await self._ensure_store()
        if self._retriever is None:
            self._retriever = MemoryRetriever(
                embedder=self._ensure_embedder(),
                memories=store,
                config=self.config.retrieval,
            )
            logger.debug("MemoryRetriever initialized")
        return self._retriever

    async def _ensure_emotion(self) -> EmotionService:
        store = await self._ensure_store()
        if self._emotion is None:
            self._emotion = EmotionService(
                repo=store,
                state_machine=EmotionStateMachine(self.config.emotion),
                config=self.config.emotion,
            )
            logger.debug("EmotionService initialized")
        return self._emotion

    def _ensure_sentiment(self) -> SentimentAnalyzer:
        if self._sentiment is None:
            self._sentiment = SentimentAnalyzer(
                self._ensure_llm(),
                timeout_seconds=self.config.summarizer.timeout_seconds,
            )
        return self._sentiment

    # ------------------------------------------------------------------
    # Turn ingestion
    # ------------------------------------------------------------------

    async def append_turn(
        self, scope: Scope, role: Role, text: str
    ) -> AppendResult | None:
        """Append one turn; summarizes the window when it fills up.

        Returns:
            The append result, or None for blank text or on failure
        """
        if not text or not text.strip():
            return None

        if not self._background.running:
            await self._background.start()
        self._save_message_later(scope, role, text)
        if role == Role.USER:
            await self.update_relationship(scope, text)

        try:
            accumulator = await self._ensure_accumulator()
            return await accumulator.append_turn(scope, role, text)
        except SummarizationError as e:
            logger.warning(
                f"Window {e.window_id} for {scope.key} kept pending: {e.cause}"
            )
        except Exception as e:
            logger.error(f"Failed to append {role.value} turn for {scope.key}: {e}")
        return None

    async def process_turn(
        self, scope: Scope, user_text: str, assistant_text: str
    ) -> list[Memory]:
        """Append a user turn then an assistant turn.

        Empty sides are skipped; each side counts as one turn.

        Returns:
            Memories formed while appending (usually none)
        """
        memories: list[Memory] = []
        for role, text in ((Role.USER, user_text), (Role.ASSISTANT, assistant_text)):
            result = await self.append_turn(scope, role, text)
            if result is not None and result.memory is not None:
                memories.append(result.memory)
        return memories

    def _save_message_later(self, scope: Scope, role: Role, text: str) -> None:
        message = ChatMessage(scope=scope, role=role, content=text)

        async def save() -> None:
            store = await self._ensure_store()
            await store.add_message(message)

        self._background.submit(f"save_message:{scope.key}", save)

    async def retry_pending(self, scope: Scope) -> list[Memory]:
        """Summarize full windows whose earlier summarization failed."""
        try:
            accumulator = await self._ensure_accumulator()
            return await accumulator.retry_pending(scope)
        except Exception as e:
            logger.error(f"Pending window retry failed for {scope.key}: {e}")
            return []

    async def get_recent(self, scope: Scope, limit: int = 20) -> list[ChatMessage]:
        """Most recent raw messages, oldest first."""
        try:
            store = await self._ensure_store()
            return await store.get_recent(scope, limit)
        except Exception as e:
            logger.warning(f"Failed to load recent messages for {scope.key}: {e}")
            return []

    async def list_windows(self, scope: Scope, limit: int = 20) -> list[ChatWindow]:
        store = await self._ensure_store()
        return await store.list_windows(scope, limit)

    async def list_memories(self, scope: Scope, limit: int = 20) -> list[Memory]:
        store = await self._ensure_store()
        return await store.list_memories(scope, limit)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def search(
        self,
        scope: Scope,
        query: str,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[RetrievedMemory]:
        """Ranked memories for a query; empty on failure."""
        try:
            retriever = await self._ensure_retriever()
            return await retriever.search(scope, query, top_k=top_k, threshold=threshold)
        except Exception as e:
            logger.warning(f"Memory retrieval failed for {scope.key}: {e}")
            return []

    async def build_memories_block(
        self, scope: Scope, query: str, max_entries: int | None = None
    ) -> str:
        """Prompt-ready block of the memories relevant to ``query``."""
        results = await self.search(scope, query)
        return format_memories_block(results, max_entries)

    # ------------------------------------------------------------------
    # Emotion
    # ------------------------------------------------------------------

    async def get_emotion_state(self, scope: Scope) -> EmotionState:
        """Current emotion state; the baseline if it cannot be loaded."""
        try:
            emotion = await self._ensure_emotion()
            return await emotion.get_state(scope)
        except Exception as e:
            logger.warning(f"Failed to load emotion state for {scope.key}: {e}")
            return EmotionStateMachine(self.config.emotion).initial_state()

    async def mood_instruction(self, scope: Scope) -> str:
        state = await self.get_emotion_state(scope)
        return mood_instruction(state.mood)

    async def record_sentiment(
        self, scope: Scope, label: SentimentLabel | str
    ) -> EmotionState | None:
        """Apply a sentiment label to the scope's emotion state.

        Returns:
            The new state, or None when the label was invalid or the
            update failed
        """
        if not isinstance(label, SentimentLabel):
            try:
                label = parse_sentiment_label(label)
            except InvalidSentimentLabelError as e:
                logger.warning(f"Emotion update skipped for {scope.key}: {e}")
                return None

        try:
            emotion = await self._ensure_emotion()
            return await emotion.update_from_label(scope, label)
        except Exception as e:
            logger.warning(f"Emotion update failed for {scope.key}: {e}")
            return None

    async def analyze_and_update(
        self, scope: Scope, text: str
    ) -> EmotionState | None:
        """Classify ``text`` with the LLM and apply the resulting label."""
        try:
            label = await self._ensure_sentiment().analyze(text)
        except Exception as e:
            logger.warning(f"Sentiment analysis failed for {scope.key}: {e}")
            return None
        return await self.record_sentiment(scope, label)

    async def handle_model_reply(self, scope: Scope, text: str) -> str:
        """Strip the emotion label from a role-play reply and apply it.

        Returns:
            The reply text; the raw text when it is not role-play JSON
        """
        try:
            output = parse_roleplay_output(text)
        except ValueError as e:
            logger.debug(f"Model reply is not role-play JSON: {e}")
            return text

        if output.emotion:
            await self.record_sentiment(scope, output.emotion)
        return output.reply

    # ------------------------------------------------------------------
    # Relationship
    # ------------------------------------------------------------------

    async def get_relationship(self, scope: Scope) -> RelationshipState:
        """Current relationship score and level; neutral if it cannot be loaded."""
        try:
            store = await self._ensure_store()
            score = await store.get_relationship_score(scope)
        except Exception as e:
            logger.warning(f"Failed to load relationship score for {scope.key}: {e}")
            return RelationshipState()
        return RelationshipState(score=score, level=relationship_level(score))

    async def update_relationship(
        self, scope: Scope, text: str
    ) -> RelationshipState | None:
        """Apply the keyword delta of one user message.

        Returns:
            The updated state, or None when the update failed
        """
        delta = relationship_score_delta(text.strip())
        if delta == 0:
            return await self.get_relationship(scope)
        try:
            store = await self._ensure_store()
            score = await store.add_relationship_delta(scope, delta)
        except Exception as e:
            logger.warning(f"Relationship update failed for {scope.key}: {e}")
            return None
        level = relationship_level(score)
        logger.debug(f"Relationship for {scope.key}: {delta:+d} -> {score} ({level.value})")
        return RelationshipState(score=score, level=level)
