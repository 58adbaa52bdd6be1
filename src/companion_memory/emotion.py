"""Relationship emotion state: affection plus mood with hysteresis.

A single non-neutral label never flips the mood; the same label has to
repeat ``streak_threshold`` times in a row before the mood follows it.
Neutral labels only nudge affection.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from loguru import logger

from .config import EmotionConfig
from .exceptions import EmotionConflictError
from .interfaces import EmotionStateRepo
from .models import EmotionState, Mood, Scope, SentimentLabel
from .salience import clamp_affection


MOOD_INSTRUCTIONS = {
    Mood.ANGRY: "Keep the tone cold and brief; avoid affectionate expressions.",
    Mood.SAD: "Keep the tone subdued and restrained; show a little hurt.",
    Mood.HAPPY: "Keep the tone warm and upbeat; be moderately affectionate.",
}


def mood_instruction(mood: Mood | str | None) -> str:
    """Short behaviour guideline for the given mood, empty for Neutral."""
    if mood is None:
        return ""
    try:
        mood = Mood(mood)
    except ValueError:
        return ""
    return MOOD_INSTRUCTIONS.get(mood, "")


class EmotionStateMachine:
    """Pure transition function for ``EmotionState``."""

    def __init__(self, config: EmotionConfig | None = None):
        self._config = config or EmotionConfig()

    def initial_state(self) -> EmotionState:
        return EmotionState(
            affection=clamp_affection(self._config.baseline_affection, self._config),
            mood=Mood.NEUTRAL,
            last_label=None,
            streak=0,
        )

    def update(self, state: EmotionState, label: SentimentLabel) -> EmotionState:
        """Return the next state; ``state`` itself is not modified."""
        c = self._config
        deltas = {
            SentimentLabel.POSITIVE: c.positive_delta,
            SentimentLabel.NEGATIVE: c.negative_delta,
            SentimentLabel.NEUTRAL: c.neutral_delta,
        }
        affection = clamp_affection(state.affection + deltas[label], c)

        streak = state.streak + 1 if label == state.last_label else 1

        mood = state.mood
        desired = self._desired_mood(affection, label, state.mood)
        if desired != mood and streak >= c.streak_threshold:
            mood = desired

        return state.model_copy(
            update={
                "affection": affection,
                "mood": mood,
                "last_label": label,
                "streak": streak,
                "updated_at": datetime.now(timezone.utc),
            }
        )

    def _desired_mood(
        self, affection: int, label: SentimentLabel, current: Mood | None
    ) -> Mood:
        if label == SentimentLabel.NEGATIVE:
            if affection <= self._config.angry_affection_threshold:
                return Mood.ANGRY
            return Mood.SAD
        if label == SentimentLabel.POSITIVE:
            return Mood.HAPPY
        return current or Mood.NEUTRAL


class EmotionService:
    """Applies sentiment labels to the persisted emotion state of a scope.

    Updates for one scope are serialized with a per-scope lock and
    committed with a version check, retried on conflict.
    """

    MAX_CONFLICT_RETRIES = 3

    def __init__(
        self,
        repo: EmotionStateRepo,
        state_machine: EmotionStateMachine | None = None,
        config: EmotionConfig | None = None,
    ):
        self._repo = repo
        self._config = config or EmotionConfig()
        self._state_machine = state_machine or EmotionStateMachine(self._config)
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, scope: Scope) -> asyncio.Lock:
        key = scope.key
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get_state(self, scope: Scope) -> EmotionState:
        """Current state for ``scope``; the configured baseline if none yet."""
        state = await self._repo.get_emotion_state(scope)
        if state is None:
            return self._state_machine.initial_state()
        return state

    async def update_from_label(
        self, scope: Scope, label: SentimentLabel
    ) -> EmotionState:
        """Apply one label and persist the resulting state.

        Args:
            scope: Relationship the label belongs to
            label: Parsed sentiment label

        Returns:
            The persisted state
        """
        async with self._get_lock(scope):
            for attempt in range(1, self.MAX_CONFLICT_RETRIES + 1):
                current = await self.get_state(scope)
                next_state = self._state_machine.update(current, label)
                try:
                    saved = await self._repo.save_emotion_state(
                        scope, next_state, expected_version=current.version
                    )
                except EmotionConflictError:
                    logger.debug(
                        f"Emotion state conflict for {scope.key} "
                        f"(attempt {attempt}), retrying"
                    )
                    continue

                if saved.mood != current.mood:
                    logger.info(
                        f"Mood changed for {scope.key}: "
                        f"{current.mood.value} -> {saved.mood.value} "
                        f"(affection={saved.affection})"
                    )
                else:
                    logger.debug(
                        f"Emotion updated for {scope.key}: label={label.value}, "
                        f"affection={saved.affection}, streak={saved.streak}"
                    )
                return saved

        raise EmotionConflictError(scope.key)
