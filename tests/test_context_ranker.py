"""Tests for turn ranking and the identity cache."""

import asyncio
import math
from datetime import datetime, timedelta, timezone

import pytest

from liminal.domain.context.context_ranker import ContextRanker
from liminal.domain.context.memory.identity_cache import IdentityCriticalityCache
from liminal.domain.models.conversation import ConversationTurn

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_turn(turn_id: str, message: str, age_days: float = 0.0, snapshot_id=None) -> ConversationTurn:
    return ConversationTurn(
        id=turn_id,
        session_id="session-1",
        user_id="user-1",
        turn_number=1,
        user_message=message,
        agent_response="noted",
        user_timestamp=NOW - timedelta(days=age_days),
        snapshot_id=snapshot_id
    )


class CountingLoader:
    def __init__(self, weights):
        self.weights = weights
        self.calls = 0

    async def __call__(self, snapshot_id: str) -> float:
        self.calls += 1
        await asyncio.sleep(0)
        return self.weights.get(snapshot_id, 0.0)


class TestRecency:
    """Tests for exponential recency decay."""

    def test_now_scores_one(self):
        assert ContextRanker().recency_score(NOW, NOW) == pytest.approx(1.0)

    def test_decays_per_day(self):
        ranker = ContextRanker(decay_rate=0.01)

        score = ranker.recency_score(NOW - timedelta(days=30), NOW)

        assert score == pytest.approx(math.exp(-0.3))

    def test_future_timestamp_clamped(self):
        assert ContextRanker().recency_score(NOW + timedelta(days=2), NOW) == pytest.approx(1.0)


class TestRelevance:
    """Tests for TF-IDF relevance."""

    def test_matching_document_scores_highest(self):
        scores = ContextRanker().relevance_scores(
            "quantum entanglement",
            ["the weather is mild", "quantum entanglement links particles", "cooking pasta"]
        )

        assert scores[1] > scores[0]
        assert scores[1] > scores[2]
        assert all(0.0 <= score <= 1.0 for score in scores)

    def test_empty_query(self):
        assert ContextRanker().relevance_scores("  ", ["a document"]) == [0.0]

    def test_stop_words_only_vocabulary(self):
        """Single-character tokens leave TF-IDF with no vocabulary."""
        assert ContextRanker().relevance_scores("a", ["a", "b"]) == [0.0, 0.0]


class TestRank:
    """Tests for combined ranking."""

    @pytest.mark.asyncio
    async def test_sorted_by_combined_score(self):
        ranker = ContextRanker()
        cache = IdentityCriticalityCache(CountingLoader({}))
        turns = [
            make_turn("old-unrelated", "gardening tips", age_days=200),
            make_turn("recent-relevant", "music theory and harmony", age_days=0),
            make_turn("old-relevant", "music theory basics", age_days=200),
        ]

        ranked = await ranker.rank("music theory", turns, cache, NOW)

        assert ranked[0].turn.id == "recent-relevant"
        assert ranked[-1].turn.id == "old-unrelated"
        combined = [item.significance.combined for item in ranked]
        assert combined == sorted(combined, reverse=True)

    @pytest.mark.asyncio
    async def test_identity_weight_breaks_ties(self):
        ranker = ContextRanker()
        cache = IdentityCriticalityCache(CountingLoader({"snap-1": 0.9}))
        turns = [
            make_turn("plain", "same words here"),
            make_turn("anchored", "same words here", snapshot_id="snap-1"),
        ]

        ranked = await ranker.rank("unrelated query", turns, cache, NOW)

        assert ranked[0].turn.id == "anchored"
        assert ranked[0].significance.identity_score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        cache = IdentityCriticalityCache(CountingLoader({}))

        assert await ContextRanker().rank("query", [], cache, NOW) == []


class TestIdentityCache:
    """Tests for the identity weight cache."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self):
        loader = CountingLoader({"snap-1": 0.7})
        cache = IdentityCriticalityCache(loader)

        weights = await asyncio.gather(*[cache.get("snap-1") for _ in range(10)])

        assert weights == [0.7] * 10
        assert loader.calls == 1
        assert cache.get_stats() == {"entries": 1, "hits": 9, "misses": 1}

    @pytest.mark.asyncio
    async def test_missing_snapshot_id(self):
        loader = CountingLoader({})
        cache = IdentityCriticalityCache(loader)

        assert await cache.get(None) == 0.0
        assert loader.calls == 0

    @pytest.mark.asyncio
    async def test_loaded_weight_clamped(self):
        cache = IdentityCriticalityCache(CountingLoader({"snap-1": 3.0}))

        assert await cache.get("snap-1") == 1.0

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self):
        loader = CountingLoader({"snap-1": 0.4})
        cache = IdentityCriticalityCache(loader)
        await cache.get("snap-1")

        assert cache.invalidate("snap-1") is True
        await cache.get("snap-1")

        assert loader.calls == 2

    def test_put_and_peek(self):
        cache = IdentityCriticalityCache(CountingLoader({}))

        cache.put("snap-1", -0.5)

        assert cache.peek("snap-1") == 0.0
        assert cache.peek("snap-2") is None
