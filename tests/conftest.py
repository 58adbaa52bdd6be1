"""
Companion memory test fixtures.

Shared fakes for the embedding, summarizer and LLM capabilities plus a
temporary SQLite store.
"""

from __future__ import annotations

import os
import tempfile
from unittest.mock import AsyncMock, MagicMock

import pytest

from companion_memory.models import MemorySummary, Scope, TimeRange
from companion_memory.storage.sqlite_store import SQLiteStore


class FakeLLM:
    """Streams canned replies and records every request."""

    def __init__(self, replies: list[str] | None = None, error: Exception | None = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls: list[dict] = []

    async def chat_completion(self, messages: list[dict], system: str | None = None):
        self.calls.append({"messages": messages, "system": system})
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else ""
        # Two chunks, like a real streaming response
        half = len(reply) // 2
        for chunk in (reply[:half], reply[half:]):
            if chunk:
                yield chunk


@pytest.fixture
def scope():
    return Scope(user_id="alice", app_name="companion", persona_id="mika")


@pytest.fixture
def other_scope():
    return Scope(user_id="bob", app_name="companion", persona_id="mika")


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "test.db")
        s = SQLiteStore(db_path=db_path)
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
def embedder():
    """Embedder fake returning fixed 3-d unit vectors."""
    mock = MagicMock()
    mock.embed_query = AsyncMock(return_value=[1.0, 0.0, 0.0])
    mock.embed_document = AsyncMock(return_value=[1.0, 0.0, 0.0])
    return mock


@pytest.fixture
def sample_summary():
    return MemorySummary(
        summary="Alice shared her birthday plans and asked Mika to remind her.",
        facts=["Alice's birthday is on May 3"],
        commitments=["Mika will remind Alice a day before"],
        emotions=["excited"],
        time_range=TimeRange(start="2026-05-01T10:00:00Z", end="2026-05-01T10:20:00Z"),
    )


@pytest.fixture
def summarizer(sample_summary):
    mock = MagicMock()
    mock.summarize = AsyncMock(return_value=sample_summary)
    return mock


@pytest.fixture
def fake_llm():
    return FakeLLM()
