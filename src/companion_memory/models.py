"""Companion memory core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MemoryType(str, Enum):
    CHAT = "chat"
    PERSONA = "persona"
    FACTS = "facts"
    EVENTS = "events"


class Mood(str, Enum):
    NEUTRAL = "Neutral"
    HAPPY = "Happy"
    SAD = "Sad"
    ANGRY = "Angry"


class SentimentLabel(str, Enum):
    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    NEUTRAL = "Neutral"


class Scope(BaseModel):
    """One independent stream of windows, memories and emotion state."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    app_name: str
    persona_id: str = "default"

    @property
    def key(self) -> str:
        return f"{self.app_name}:{self.persona_id}:{self.user_id}"

    def __str__(self) -> str:
        return self.key


class ChatWindow(BaseModel):
    """A rolling transcript buffer that is summarized once it fills up."""

    id: int | None = None
    scope: Scope
    content: str = ""
    turn_count: int = 0
    summarized: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    def is_full(self, trunk_size: int) -> bool:
        return self.turn_count >= trunk_size


class ChatMessage(BaseModel):
    """A raw chat message kept for recent-history lookups."""

    id: int | None = None
    scope: Scope
    role: Role
    content: str
    created_at: datetime = Field(default_factory=_utcnow)


class TimeRange(BaseModel):
    """Period covered by a summarized window."""

    start: str = ""
    end: str = ""

    @property
    def is_set(self) -> bool:
        return bool(self.start or self.end)


class MemorySummary(BaseModel):
    """Structured summarizer output."""

    summary: str = ""
    facts: list[str] = Field(default_factory=list)
    commitments: list[str] = Field(default_factory=list)
    emotions: list[str] = Field(default_factory=list)
    time_range: TimeRange = Field(default_factory=TimeRange)
    salience_score: float | None = None


class Memory(BaseModel):
    """A persisted memory derived from exactly one summarized window."""

    id: int | None = None
    scope: Scope
    memory_type: MemoryType = MemoryType.CHAT
    summary: str
    facts: list[str] = Field(default_factory=list)
    commitments: list[str] = Field(default_factory=list)
    emotions: list[str] = Field(default_factory=list)
    time_range: TimeRange = Field(default_factory=TimeRange)
    salience: float = 0.0
    embedding: list[float] | None = None
    source_window_id: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class RetrievedMemory(BaseModel):
    """A memory returned by similarity search, with its scores."""

    memory_id: int
    role: Role = Role.ASSISTANT
    content: str
    memory_type: MemoryType = MemoryType.CHAT
    similarity: float
    salience: float = 0.0
    rank_score: float = 0.0
    created_at: datetime = Field(default_factory=_utcnow)


class EmotionState(BaseModel):
    """Affection and mood for one persona/participant relationship."""

    affection: int = 50
    mood: Mood = Mood.NEUTRAL
    last_label: SentimentLabel | None = None
    streak: int = 0
    version: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)
