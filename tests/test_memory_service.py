"""Tests for the MemoryService facade."""

import json
import os
import tempfile

import pytest

from conftest import FakeLLM

from companion_memory.config import MemoryConfig
from companion_memory.exceptions import MalformedSummaryError
from companion_memory.memory_service import MemoryService
from companion_memory.models import Mood, Role
from companion_memory.relationship import RelationshipLevel
from companion_memory.storage.sqlite_store import SQLiteStore


@pytest.fixture
def config():
    return MemoryConfig(window={"trunk_size": 2})


@pytest.fixture
async def service(config, embedder, summarizer, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        svc = MemoryService(
            config=config,
            store=SQLiteStore(db_path=os.path.join(tmpdir, "svc.db")),
            embedder=embedder,
            llm=fake_llm,
            summarizer=summarizer,
        )
        await svc.initialize()
        yield svc
        await svc.close()


def roleplay(reply, emotion):
    return json.dumps({"reply": reply, "emotion": emotion})


class TestTurns:
    async def test_process_turn_forms_memory(self, service, scope, summarizer):
        memories = await service.process_turn(scope, "I start my new job tomorrow", "Good luck!")

        assert len(memories) == 1
        summarizer.summarize.assert_awaited_once_with(
            "user: I start my new job tomorrow\nassistant: Good luck!\n"
        )
        stored = await service.list_memories(scope)
        assert [m.id for m in stored] == [memories[0].id]

    async def test_process_turn_skips_empty_side(self, service, scope):
        assert await service.process_turn(scope, "hello?", "   ") == []
        windows = await service.list_windows(scope)
        assert windows[0].turn_count == 1

    async def test_raw_messages_saved_in_background(self, service, scope):
        await service.process_turn(scope, "hi", "hello")
        await service.background.join()

        recent = await service.get_recent(scope, limit=10)
        assert [(m.role, m.content) for m in recent] == [
            (Role.USER, "hi"),
            (Role.ASSISTANT, "hello"),
        ]

    async def test_summarization_failure_is_swallowed(self, service, scope, summarizer):
        summarizer.summarize.side_effect = MalformedSummaryError("oops", "no json")

        assert await service.process_turn(scope, "hi", "hello") == []

        pending = await service.list_windows(scope)
        assert pending[0].summarized is False

    async def test_retry_pending(self, service, scope, summarizer, sample_summary):
        summarizer.summarize.side_effect = [
            MalformedSummaryError("oops", "no json"),
            sample_summary,
        ]
        await service.process_turn(scope, "hi", "hello")

        memories = await service.retry_pending(scope)

        assert len(memories) == 1
        assert (await service.list_windows(scope))[0].summarized is True


class TestSearch:
    async def test_empty_query(self, service, scope, embedder):
        assert await service.search(scope, "") == []
        embedder.embed_query.assert_not_awaited()

    async def test_memories_block(self, service, scope, sample_summary):
        await service.process_turn(scope, "my birthday is May 3", "I'll remember!")

        block = await service.build_memories_block(scope, "when is my birthday?")

        assert block.startswith("- [")
        assert f"assistant: {sample_summary.summary}" in block

    async def test_retrieval_failure_returns_empty(self, service, scope, embedder):
        embedder.embed_query.side_effect = RuntimeError("model not loaded")
        assert await service.search(scope, "anything") == []


class TestEmotion:
    async def test_initial_state(self, service, scope):
        state = await service.get_emotion_state(scope)
        assert state.affection == 50
        assert state.mood == Mood.NEUTRAL
        assert await service.mood_instruction(scope) == ""

    async def test_handle_model_reply_updates_emotion(self, service, scope):
        first = await service.handle_model_reply(scope, roleplay("Yay!", "Positive"))
        second = await service.handle_model_reply(scope, roleplay("So happy!", "Positive"))

        assert (first, second) == ("Yay!", "So happy!")
        state = await service.get_emotion_state(scope)
        assert state.mood == Mood.HAPPY
        assert state.affection == 60
        assert await service.mood_instruction(scope)

    async def test_invalid_label_returns_reply_without_update(self, service, scope):
        reply = await service.handle_model_reply(scope, roleplay("Hmm.", "Confused"))

        assert reply == "Hmm."
        state = await service.get_emotion_state(scope)
        assert state.version == 0
        assert state.affection == 50

    async def test_plain_reply_returned_unchanged(self, service, scope):
        assert await service.handle_model_reply(scope, "Just text.") == "Just text."

    async def test_record_sentiment_accepts_strings(self, service, scope):
        state = await service.record_sentiment(scope, "negative")
        assert state.affection == 40
        assert await service.record_sentiment(scope, "bogus") is None

    async def test_analyze_and_update(self, service, scope, fake_llm):
        fake_llm.replies = ["Negative"]
        state = await service.analyze_and_update(scope, "You ignored me all day.")
        assert state.affection == 40
        assert state.mood == Mood.NEUTRAL

    async def test_analyze_failure_is_swallowed(self, service, scope):
        service.set_llm(FakeLLM(replies=["the user seems upset"]))
        assert await service.analyze_and_update(scope, "whatever") is None
        assert (await service.get_emotion_state(scope)).version == 0


class TestRelationship:
    async def test_starts_neutral(self, service, scope):
        state = await service.get_relationship(scope)
        assert state.score == 0
        assert state.level == RelationshipLevel.NEUTRAL

    async def test_only_user_turns_count(self, service, scope):
        await service.process_turn(scope, "thank you, I love you", "I love you too")

        state = await service.get_relationship(scope)
        assert state.score == 5
        assert state.level == RelationshipLevel.CLOSE

    async def test_negative_words_lower_level(self, service, scope):
        state = await service.update_relationship(scope, "I hate you")
        assert state.score == -3
        assert state.level == RelationshipLevel.DISTANT


class TestLazyStart:
    async def test_store_opened_once_without_initialize(
        self, config, embedder, summarizer, fake_llm, scope
    ):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SQLiteStore(db_path=os.path.join(tmpdir, "lazy.db"))
            opened = []
            original_initialize = store.initialize

            async def counting_initialize():
                opened.append(True)
                await original_initialize()

            store.initialize = counting_initialize
            svc = MemoryService(
                config=config,
                store=store,
                embedder=embedder,
                llm=fake_llm,
                summarizer=summarizer,
            )

            await svc.append_turn(scope, Role.USER, "hello")
            await svc.background.join()

            assert len(opened) == 1
            assert [m.content for m in await svc.get_recent(scope)] == ["hello"]
            await svc.close()
