"""Tests for memory retrieval ranking."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from companion_memory.config import RetrievalConfig
from companion_memory.models import Memory, RetrievedMemory, Role
from companion_memory.retrieval import MemoryRetriever, format_memories_block

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def candidate(memory_id, similarity, salience, created_at=NOW, content=None):
    return RetrievedMemory(
        memory_id=memory_id,
        content=content or f"memory {memory_id}",
        similarity=similarity,
        salience=salience,
        created_at=created_at,
    )


@pytest.fixture
def repo():
    mock = MagicMock()
    mock.search_similar = AsyncMock(return_value=[])
    return mock


class TestSearch:
    @pytest.mark.parametrize("query", ["", "   ", "\n"])
    async def test_blank_query_skips_embedding(self, embedder, repo, scope, query):
        retriever = MemoryRetriever(embedder, repo)

        assert await retriever.search(scope, query, top_k=5, threshold=0.7) == []
        embedder.embed_query.assert_not_awaited()
        repo.search_similar.assert_not_awaited()

    async def test_uses_query_embedding_and_threshold(self, embedder, repo, scope):
        retriever = MemoryRetriever(embedder, repo, RetrievalConfig(similarity_threshold=0.6))

        await retriever.search(scope, "birthday")

        embedder.embed_query.assert_awaited_once_with("birthday")
        embedder.embed_document.assert_not_awaited()
        args = repo.search_similar.await_args
        assert args.args[:3] == (scope, [1.0, 0.0, 0.0], 0.6)
        assert args.kwargs["memory_type"] == "chat"

    async def test_explicit_threshold_overrides_config(self, embedder, repo, scope):
        retriever = MemoryRetriever(embedder, repo)
        await retriever.search(scope, "q", threshold=0.2)
        assert repo.search_similar.await_args.args[2] == 0.2

    async def test_blended_ranking(self, embedder, repo, scope):
        repo.search_similar.return_value = [
            candidate(1, similarity=0.90, salience=0.0),
            candidate(2, similarity=0.80, salience=1.0),
            candidate(3, similarity=0.85, salience=0.5),
        ]
        results = await MemoryRetriever(embedder, repo).search(scope, "q")

        assert [r.memory_id for r in results] == [2, 3, 1]
        assert results[0].rank_score == pytest.approx(0.85 * 0.80 + 0.15 * 1.0)
        assert results[2].rank_score == pytest.approx(0.85 * 0.90)
        scores = [r.rank_score for r in results]
        assert scores == sorted(scores, reverse=True)

    async def test_top_k_cut(self, embedder, repo, scope):
        repo.search_similar.return_value = [
            candidate(i, similarity=0.7 + i * 0.01, salience=0.0) for i in range(10)
        ]
        results = await MemoryRetriever(embedder, repo).search(scope, "q", top_k=3)
        assert [r.memory_id for r in results] == [9, 8, 7]

    async def test_zero_top_k_returns_nothing(self, embedder, repo, scope):
        repo.search_similar.return_value = [candidate(1, similarity=0.9, salience=0.5)]
        assert await MemoryRetriever(embedder, repo).search(scope, "q", top_k=0) == []

    async def test_default_top_k_from_config(self, embedder, repo, scope):
        repo.search_similar.return_value = [
            candidate(i, similarity=0.8, salience=0.0) for i in range(10)
        ]
        retriever = MemoryRetriever(embedder, repo, RetrievalConfig(top_k=4))
        assert len(await retriever.search(scope, "q")) == 4

    async def test_ties_prefer_newer_then_higher_id(self, embedder, repo, scope):
        older = NOW - timedelta(days=1)
        repo.search_similar.return_value = [
            candidate(1, 0.8, 0.2, created_at=older),
            candidate(2, 0.8, 0.2, created_at=NOW),
            candidate(3, 0.8, 0.2, created_at=NOW),
        ]
        results = await MemoryRetriever(embedder, repo).search(scope, "q")
        assert [r.memory_id for r in results] == [3, 2, 1]

    async def test_against_store(self, store, embedder, scope):
        await store.add_memory(Memory(
            scope=scope, summary="likes green tea", embedding=[1.0, 0.0, 0.0], salience=0.2,
        ))
        await store.add_memory(Memory(
            scope=scope, summary="close match", embedding=[0.95, 0.31, 0.0], salience=0.9,
        ))
        await store.add_memory(Memory(
            scope=scope, summary="unrelated", embedding=[0.0, 1.0, 0.0], salience=1.0,
        ))

        results = await MemoryRetriever(embedder, store).search(scope, "tea")

        assert [r.content for r in results] == ["close match", "likes green tea"]


class TestFormatMemoriesBlock:
    def test_lines(self):
        block = format_memories_block([
            candidate(1, 0.9, 0.1, content="Alice likes tea"),
            candidate(2, 0.8, 0.1, content="  "),
        ])
        assert block == "- [2026-05-01T12:00:00+00:00] assistant: Alice likes tea\n"

    def test_max_entries(self):
        results = [candidate(i, 0.9, 0.1) for i in range(5)]
        block = format_memories_block(results, max_entries=2)
        assert block.count("\n") == 2

    def test_empty(self):
        assert format_memories_block([]) == ""

    def test_role_rendered(self):
        result = candidate(1, 0.9, 0.1, content="hi").model_copy(update={"role": Role.USER})
        assert "] user: hi" in format_memories_block([result])
