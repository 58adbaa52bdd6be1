"""Deterministic salience scoring.

Structured mode scores a summarizer result (plus the current emotion
state when available). Fallback mode scores a raw transcript when no
structured summary exists.
"""

from __future__ import annotations

import math

from .config import EmotionConfig, SalienceConfig
from .models import EmotionState, MemorySummary, Mood, Role


def clamp_salience(score: float) -> float:
    """Clamp a score to [0, 1]; NaN maps to 0."""
    if math.isnan(score) or score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


def clamp_affection(value: int, config: EmotionConfig | None = None) -> int:
    config = config or EmotionConfig()
    return max(config.min_affection, min(config.max_affection, value))


class SalienceScorer:
    """Additive, clamped importance scores for memories."""

    def __init__(self, config: SalienceConfig | None = None):
        self._config = config or SalienceConfig()
        self._keywords = [k.lower() for k in self._config.keywords if k]

    def score(
        self,
        summary: MemorySummary,
        state: EmotionState | None = None,
    ) -> float:
        """Score a structured summary.

        Args:
            summary: Structured summarizer output
            state: Current emotion state for the scope, if known

        Returns:
            Salience in [0, 1]
        """
        c = self._config
        score = 0.0

        if summary.summary:
            score += c.summary_present

        score += min(len(summary.facts), c.fact_cap) * c.fact_weight
        score += min(len(summary.commitments), c.commitment_cap) * c.commitment_weight
        score += min(len(summary.emotions), c.emotion_cap) * c.emotion_weight

        if summary.time_range.is_set:
            score += c.time_range_present

        summary_len = len(summary.summary)
        if summary_len >= c.long_summary_chars:
            score += c.long_summary_bonus
        elif summary_len >= c.medium_summary_chars:
            score += c.medium_summary_bonus

        if state is not None:
            if state.mood in (Mood.ANGRY, Mood.SAD):
                score += c.negative_mood_bonus
            elif state.mood == Mood.HAPPY:
                score += c.happy_mood_bonus

            if state.affection <= c.low_affection_threshold:
                score += c.low_affection_bonus
            elif state.affection >= c.high_affection_threshold:
                score += c.high_affection_bonus

        return clamp_salience(score)

    def score_transcript(self, transcript: str) -> float:
        """Heuristic score over raw ``role: text`` transcript lines."""
        total = 0.0
        for raw_line in transcript.splitlines():
            role, text = split_role_prefix(raw_line)
            if not text:
                continue
            weight = (
                self._config.user_line_weight
                if role == Role.USER
                else self._config.assistant_line_weight
            )
            total = clamp_salience(total + self._score_line(text) * weight)
        return total

    def _score_line(self, text: str) -> float:
        c = self._config
        length_score = min(len(text) / c.line_length_divisor, c.line_length_cap)
        lowered = text.lower()
        matches = sum(1 for keyword in self._keywords if keyword in lowered)
        keyword_score = min(c.keyword_weight * matches, c.keyword_cap)
        return clamp_salience(length_score + keyword_score)


def split_role_prefix(line: str) -> tuple[Role | None, str]:
    """Split ``"user: hi"`` into ``(Role.USER, "hi")``."""
    stripped = line.strip()
    head, sep, tail = stripped.partition(":")
    if sep:
        try:
            return Role(head.strip().lower()), tail.strip()
        except ValueError:
            pass
    return None, stripped
