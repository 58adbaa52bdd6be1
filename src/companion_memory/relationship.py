"""Keyword-based relationship level.

A coarse, model-free signal derived from the user's own wording. Each
keyword tier contributes at most once per message.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class RelationshipLevel(str, Enum):
    DISTANT = "Distant"
    NEUTRAL = "Neutral"
    FRIENDLY = "Friendly"
    CLOSE = "Close"
    INTIMATE = "Intimate"


class RelationshipState(BaseModel):
    """Running relationship score of a scope and its level."""

    score: int = 0
    level: RelationshipLevel = RelationshipLevel.NEUTRAL


STRONG_POSITIVE_KEYWORDS = [
    "爱你", "好爱", "想你", "亲亲", "拥抱",
    "love you", "adore you", "miss you",
]
POSITIVE_KEYWORDS = [
    "喜欢", "开心", "谢谢", "感激", "欣赏", "温柔", "可爱", "贴心",
    "thank you", "thanks", "great", "good", "sweet",
]
NEGATIVE_KEYWORDS = [
    "失望", "难过", "冷淡", "不喜欢", "讨厌", "烦", "生气",
    "annoy", "upset", "sad", "bad",
]
STRONG_NEGATIVE_KEYWORDS = [
    "恨你", "讨厌你", "滚", "闭嘴", "恶心",
    "hate you", "fuck",
]


def _contains_any(text: str, keywords: list[str]) -> bool:
    return any(keyword and keyword in text for keyword in keywords)


def relationship_score_delta(text: str) -> int:
    lowered = text.lower()
    delta = 0
    if _contains_any(lowered, STRONG_POSITIVE_KEYWORDS):
        delta += 3
    if _contains_any(lowered, POSITIVE_KEYWORDS):
        delta += 2
    if _contains_any(lowered, NEGATIVE_KEYWORDS):
        delta -= 2
    if _contains_any(lowered, STRONG_NEGATIVE_KEYWORDS):
        delta -= 3
    return delta


def relationship_level(score: int) -> RelationshipLevel:
    if score <= -3:
        return RelationshipLevel.DISTANT
    if score <= 1:
        return RelationshipLevel.NEUTRAL
    if score <= 4:
        return RelationshipLevel.FRIENDLY
    if score <= 7:
        return RelationshipLevel.CLOSE
    return RelationshipLevel.INTIMATE


def update_relationship(score: int, text: str) -> tuple[int, RelationshipLevel]:
    """Apply one user message to a running relationship score."""
    new_score = score + relationship_score_delta(text.strip())
    return new_score, relationship_level(new_score)
