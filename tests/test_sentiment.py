"""Tests for sentiment label parsing and role-play reply decoding."""

import asyncio

import pytest

from conftest import FakeLLM

from companion_memory.exceptions import InvalidSentimentLabelError
from companion_memory.models import SentimentLabel
from companion_memory.sentiment import (
    SentimentAnalyzer,
    parse_roleplay_output,
    parse_sentiment_label,
)


class TestParseSentimentLabel:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Positive", SentimentLabel.POSITIVE),
            ("negative", SentimentLabel.NEGATIVE),
            ("  NEUTRAL  ", SentimentLabel.NEUTRAL),
            ("Positive.", SentimentLabel.POSITIVE),
            ('"Negative"', SentimentLabel.NEGATIVE),
        ],
    )
    def test_valid_labels(self, raw, expected):
        assert parse_sentiment_label(raw) == expected

    @pytest.mark.parametrize("raw", ["", "happy", "Positive-ish", "The user is positive"])
    def test_invalid_labels(self, raw):
        with pytest.raises(InvalidSentimentLabelError) as exc_info:
            parse_sentiment_label(raw)
        assert exc_info.value.raw == raw

    def test_none_is_invalid(self):
        with pytest.raises(InvalidSentimentLabelError):
            parse_sentiment_label(None)


class TestParseRoleplayOutput:
    def test_reply_and_emotion(self):
        output = parse_roleplay_output('{"reply": " Hi there! ", "emotion": "Positive"}')
        assert output.reply == "Hi there!"
        assert output.emotion == "Positive"

    def test_json_inside_prose(self):
        text = 'Reply follows:\n{"reply": "Okay.", "emotion": "Neutral"}\n'
        assert parse_roleplay_output(text).reply == "Okay."

    def test_missing_emotion_is_empty(self):
        assert parse_roleplay_output('{"reply": "Okay."}').emotion == ""

    def test_plain_text_raises(self):
        with pytest.raises(ValueError):
            parse_roleplay_output("Just a normal reply.")

    def test_missing_reply_raises(self):
        with pytest.raises(ValueError):
            parse_roleplay_output('{"emotion": "Positive"}')


class TestSentimentAnalyzer:
    async def test_returns_label_from_llm(self):
        llm = FakeLLM(replies=["Negative"])
        label = await SentimentAnalyzer(llm).analyze("You forgot my birthday again.")
        assert label == SentimentLabel.NEGATIVE
        assert llm.calls[0]["messages"][0]["content"] == "You forgot my birthday again."

    async def test_empty_text_is_neutral_without_call(self):
        llm = FakeLLM(replies=["Positive"])
        assert await SentimentAnalyzer(llm).analyze("   ") == SentimentLabel.NEUTRAL
        assert llm.calls == []

    async def test_unexpected_reply_raises(self):
        llm = FakeLLM(replies=["I think the user is happy"])
        with pytest.raises(InvalidSentimentLabelError):
            await SentimentAnalyzer(llm).analyze("yay")

    async def test_text_delta_chunks_accepted(self):
        class DeltaLLM:
            async def chat_completion(self, messages, system=None):
                yield {"type": "text_delta", "text": "Posi"}
                yield {"type": "tool_use", "name": "ignored"}
                yield {"type": "text_delta", "text": "tive"}

        assert await SentimentAnalyzer(DeltaLLM()).analyze("yay") == SentimentLabel.POSITIVE

    async def test_slow_model_times_out(self):
        class SlowLLM:
            async def chat_completion(self, messages, system=None):
                await asyncio.sleep(1)
                yield "Positive"

        with pytest.raises(asyncio.TimeoutError):
            await SentimentAnalyzer(SlowLLM(), timeout_seconds=0.05).analyze("yay")
