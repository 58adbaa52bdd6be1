"""Tests for structured and transcript salience scoring."""

import math

import pytest

from companion_memory.config import SalienceConfig
from companion_memory.models import EmotionState, MemorySummary, Mood, Role, TimeRange
from companion_memory.salience import (
    SalienceScorer,
    clamp_salience,
    split_role_prefix,
)


@pytest.fixture
def scorer():
    return SalienceScorer()


class TestClampSalience:
    def test_in_range_unchanged(self):
        assert clamp_salience(0.42) == 0.42

    def test_negative_clamped_to_zero(self):
        assert clamp_salience(-0.3) == 0.0

    def test_above_one_clamped(self):
        assert clamp_salience(1.7) == 1.0

    def test_nan_is_zero(self):
        assert clamp_salience(math.nan) == 0.0


class TestStructuredScore:
    def test_empty_summary_scores_zero(self, scorer):
        assert scorer.score(MemorySummary()) == 0.0

    def test_summary_text_only(self, scorer):
        assert scorer.score(MemorySummary(summary="hello")) == pytest.approx(0.10)

    def test_each_signal_adds_its_weight(self, scorer):
        summary = MemorySummary(
            summary="hello",
            facts=["a"],
            commitments=["b"],
            emotions=["c"],
            time_range=TimeRange(start="2026-01-01T00:00:00Z"),
        )
        # 0.10 + 0.15 + 0.20 + 0.10 + 0.05
        assert scorer.score(summary) == pytest.approx(0.60)

    def test_length_bonuses(self, scorer):
        medium = MemorySummary(summary="x" * 100)
        long = MemorySummary(summary="x" * 200)
        assert scorer.score(medium) == pytest.approx(0.15)
        assert scorer.score(long) == pytest.approx(0.20)

    def test_length_counts_code_points(self, scorer):
        assert scorer.score(MemorySummary(summary="生" * 100)) == pytest.approx(0.15)

    def test_counts_are_capped(self, scorer):
        capped = MemorySummary(summary="s", facts=["f"] * 3, commitments=["c"] * 2)
        over = MemorySummary(summary="s", facts=["f"] * 9, commitments=["c"] * 7)
        assert scorer.score(over) == pytest.approx(scorer.score(capped))

    def test_monotonic_in_fact_count(self, scorer):
        scores = [
            scorer.score(MemorySummary(summary="s", facts=["f"] * n))
            for n in range(6)
        ]
        assert scores == sorted(scores)

    def test_total_is_clamped(self, scorer):
        summary = MemorySummary(
            summary="x" * 300,
            facts=["f"] * 3,
            commitments=["c"] * 2,
            emotions=["e"] * 2,
            time_range=TimeRange(start="a", end="b"),
        )
        state = EmotionState(affection=10, mood=Mood.ANGRY)
        assert scorer.score(summary, state) == 1.0

    @pytest.mark.parametrize(
        "mood, affection, expected",
        [
            (Mood.NEUTRAL, 50, 0.10),
            (Mood.ANGRY, 50, 0.20),
            (Mood.SAD, 50, 0.20),
            (Mood.HAPPY, 50, 0.15),
            (Mood.NEUTRAL, 20, 0.15),
            (Mood.NEUTRAL, 80, 0.13),
            (Mood.SAD, 5, 0.25),
        ],
    )
    def test_emotion_context(self, scorer, mood, affection, expected):
        state = EmotionState(affection=affection, mood=mood)
        assert scorer.score(MemorySummary(summary="hello"), state) == pytest.approx(expected)

    def test_weights_come_from_config(self):
        scorer = SalienceScorer(SalienceConfig(summary_present=0.3))
        assert scorer.score(MemorySummary(summary="hello")) == pytest.approx(0.3)


class TestTranscriptScore:
    def test_empty_transcript(self, scorer):
        assert scorer.score_transcript("") == 0.0

    def test_length_score_is_capped_and_weighted(self, scorer):
        user = scorer.score_transcript("user: " + "a" * 800)
        assistant = scorer.score_transcript("assistant: " + "a" * 800)
        assert user == pytest.approx(0.5 * 0.6)
        assert assistant == pytest.approx(0.5 * 0.4)

    def test_keywords_count_once_each(self, scorer):
        # 16 chars -> 0.04 length, two keywords -> 0.2
        assert scorer.score_transcript("user: my birthday plan") == pytest.approx(
            (16 / 400 + 0.2) * 0.6
        )

    def test_chinese_keywords(self, scorer):
        text = "user: 我的生日计划"
        assert scorer.score_transcript(text) == pytest.approx((6 / 400 + 0.2) * 0.6)

    def test_unprefixed_line_uses_assistant_weight(self, scorer):
        line = "b" * 40
        assert scorer.score_transcript(line) == pytest.approx(0.1 * 0.4)

    def test_accumulates_across_lines_and_clamps(self, scorer):
        transcript = "\n".join(["user: " + "a" * 400] * 10)
        assert scorer.score_transcript(transcript) == 1.0

    def test_blank_lines_ignored(self, scorer):
        assert scorer.score_transcript("\n\nuser:   \n") == 0.0


class TestSplitRolePrefix:
    def test_user_prefix(self):
        assert split_role_prefix("User: hi there") == (Role.USER, "hi there")

    def test_assistant_prefix(self):
        assert split_role_prefix("assistant: ok") == (Role.ASSISTANT, "ok")

    def test_unknown_prefix_kept(self):
        assert split_role_prefix("note: remember") == (None, "note: remember")
