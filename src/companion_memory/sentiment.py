"""Sentiment labels from model output.

Labels are validated here, before they reach the emotion state machine.
"""

from __future__ import annotations

import asyncio
import json

from loguru import logger
from pydantic import BaseModel

from .exceptions import InvalidSentimentLabelError
from .interfaces import LLMInterface
from .models import SentimentLabel
from .summarizer import collect_completion, extract_json_span

SENTIMENT_SYSTEM_PROMPT = (
    "You are a sentiment analyzer. Reply with exactly one of these labels: "
    "Positive, Negative, Neutral. Output nothing else."
)


def parse_sentiment_label(raw: str | None) -> SentimentLabel:
    """Parse a label case-insensitively.

    Raises:
        InvalidSentimentLabelError: not Positive, Negative or Neutral
    """
    if raw is None:
        raise InvalidSentimentLabelError("")
    normalized = raw.strip().strip(".!\"'`").lower()
    for label in SentimentLabel:
        if label.value.lower() == normalized:
            return label
    raise InvalidSentimentLabelError(raw)


class RoleplayOutput(BaseModel):
    """Structured companion reply carrying its own sentiment label."""

    reply: str
    emotion: str = ""


def parse_roleplay_output(text: str) -> RoleplayOutput:
    """Decode ``{"reply": ..., "emotion": ...}`` from model output.

    Raises:
        ValueError: no JSON object with a ``reply`` field was found
    """
    span = extract_json_span(text)
    try:
        data = json.loads(span)
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse roleplay output: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("reply"), str):
        raise ValueError("Roleplay output has no 'reply' field")
    emotion = data.get("emotion")
    return RoleplayOutput(
        reply=data["reply"].strip(),
        emotion=emotion.strip() if isinstance(emotion, str) else "",
    )


class SentimentAnalyzer:
    """Classifies text sentiment with a stateless LLM."""

    def __init__(self, llm: LLMInterface, timeout_seconds: float = 30.0):
        self._llm = llm
        self._timeout_seconds = timeout_seconds

    async def analyze(self, text: str) -> SentimentLabel:
        """Return the sentiment label for ``text``.

        Empty text is Neutral without calling the model.

        Raises:
            InvalidSentimentLabelError: the model replied with something else
            asyncio.TimeoutError: the model did not answer in time
        """
        if not text.strip():
            return SentimentLabel.NEUTRAL

        try:
            raw = await asyncio.wait_for(
                collect_completion(
                    self._llm,
                    [{"role": "user", "content": text}],
                    SENTIMENT_SYSTEM_PROMPT,
                ),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Sentiment analysis timed out after {self._timeout_seconds}s"
            )
            raise
        label = parse_sentiment_label(raw)
        logger.debug(f"Sentiment analyzed: {label.value}")
        return label
