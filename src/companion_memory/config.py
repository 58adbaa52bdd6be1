"""Companion memory configuration models."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, model_validator


DEFAULT_SALIENCE_KEYWORDS = [
    # English
    "prefer",
    "fear",
    "dream",
    "goal",
    "plan",
    "promise",
    "birthday",
    "anniversary",
    "address",
    "phone",
    "job",
    "school",
    "family",
    # Chinese
    "喜欢",
    "害怕",
    "梦想",
    "目标",
    "计划",
    "承诺",
    "生日",
    "纪念日",
    "地址",
    "电话",
    "工作",
    "学校",
    "家人",
]


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/companion.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class WindowConfig(BaseModel):
    """Rolling chat window configuration."""

    trunk_size: int = Field(default=50, ge=2)


class EmbeddingConfig(BaseModel):
    """Embedding model configuration.

    The prefixes implement the asymmetric query/document scheme used by
    nomic-style retrieval models.
    """

    model: str = "nomic-ai/nomic-embed-text-v1.5"
    dimension: int = 768
    query_prefix: str = "search_query: "
    document_prefix: str = "search_document: "
    trust_remote_code: bool = True
    timeout_seconds: float = 30.0


class SummarizerConfig(BaseModel):
    """LLM summarizer configuration."""

    model: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key: str = ""
    temperature: float = 0.2
    timeout_seconds: float = 60.0
    fallback_chars: int = Field(default=500, gt=0)


class SalienceConfig(BaseModel):
    """Weights for the structured and fallback salience scorers."""

    # Structured mode
    summary_present: float = 0.10
    fact_weight: float = 0.15
    fact_cap: int = 3
    commitment_weight: float = 0.20
    commitment_cap: int = 2
    emotion_weight: float = 0.10
    emotion_cap: int = 2
    time_range_present: float = 0.05
    long_summary_chars: int = 200
    long_summary_bonus: float = 0.10
    medium_summary_chars: int = 100
    medium_summary_bonus: float = 0.05
    negative_mood_bonus: float = 0.10
    happy_mood_bonus: float = 0.05
    low_affection_threshold: int = 20
    low_affection_bonus: float = 0.05
    high_affection_threshold: int = 80
    high_affection_bonus: float = 0.03

    # Fallback heuristic mode
    user_line_weight: float = 0.6
    assistant_line_weight: float = 0.4
    line_length_divisor: float = 400.0
    line_length_cap: float = 0.5
    keyword_weight: float = 0.1
    keyword_cap: float = 0.5
    keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SALIENCE_KEYWORDS)
    )


class RetrievalConfig(BaseModel):
    """Similarity + salience ranking configuration."""

    top_k: int = Field(default=5, gt=0)
    similarity_threshold: float = 0.7
    similarity_weight: float = 0.85
    salience_weight: float = 0.15


class EmotionConfig(BaseModel):
    """Affection/mood state machine configuration."""

    baseline_affection: int = 50
    min_affection: int = 0
    max_affection: int = 100
    positive_delta: int = 5
    negative_delta: int = -10
    neutral_delta: int = 1
    angry_affection_threshold: int = 30
    streak_threshold: int = Field(default=2, ge=1)

    @model_validator(mode="after")
    def _validate_bounds(self) -> "EmotionConfig":
        if self.min_affection > self.max_affection:
            raise ValueError("min_affection must not exceed max_affection")
        return self


class BackgroundConfig(BaseModel):
    """Best-effort background task queue configuration."""

    max_queue_size: int = Field(default=256, gt=0)
    worker_count: int = Field(default=1, gt=0)
    error_channel_size: int = Field(default=64, gt=0)


class MemoryConfig(BaseModel):
    """Top-level companion memory configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    window: WindowConfig = Field(default_factory=WindowConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    salience: SalienceConfig = Field(default_factory=SalienceConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    emotion: EmotionConfig = Field(default_factory=EmotionConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
