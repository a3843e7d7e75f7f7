"""Unit tests for the result cache tier."""

import pytest

from docqa.cache.result_cache import (
    AnswerCache,
    CacheTier,
    QueryRewriteCache,
    RerankCache,
    ResultCache,
    content_hash,
)
from docqa.config import CacheConfig


class Clock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def tick(self, seconds: float = 1.0) -> None:
        self.now += seconds


class TestResultCacheEviction:
    def test_overflow_keeps_newest_eighty_percent(self):
        clock = Clock()
        cache = ResultCache(max_size=10, clock=clock)
        for i in range(11):
            cache.set(f"k{i}", i)
            clock.tick()

        assert len(cache) == 8
        assert sorted(cache.keys(), key=lambda k: int(k[1:])) == [f"k{i}" for i in range(3, 11)]
        assert cache.stats()["evictions"] == 3

    def test_kept_count_is_rounded(self):
        cache = ResultCache(max_size=5, clock=Clock())
        for i in range(6):
            cache.set(f"k{i}", i)
        assert len(cache) == 4

    def test_equal_timestamps_fall_back_to_write_order(self):
        cache = ResultCache(max_size=5, clock=Clock())
        for i in range(6):
            cache.set(f"k{i}", i)
        assert set(cache.keys()) == {"k2", "k3", "k4", "k5"}

    def test_overwrite_does_not_trigger_eviction(self):
        cache = ResultCache(max_size=2, clock=Clock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        assert len(cache) == 2
        assert cache.get("a") == 3

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            ResultCache(max_size=0)


class TestResultCacheTTL:
    def test_expired_entry_is_a_miss(self):
        clock = Clock()
        cache = ResultCache(max_size=10, ttl_seconds=10, clock=clock)
        cache.set("q", "value")
        clock.tick(5)
        assert cache.get("q") == "value"
        clock.tick(6)
        assert cache.get("q") is None
        assert "q" not in cache

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5


class TestAnswerCache:
    def test_round_trip_marks_cached(self):
        cache = AnswerCache()
        payload = {"answer": "42", "sources": [], "cached": False}
        cache.set_answer("What is RAM?", payload)

        hit = cache.get_answer("what is ram")
        assert hit == {"answer": "42", "sources": [], "cached": True}

    def test_returned_payload_is_a_copy(self):
        cache = AnswerCache()
        cache.set_answer("q", {"sources": [{"index": 1}]})
        first = cache.get_answer("q")
        first["sources"].append({"index": 2})
        assert cache.get_answer("q")["sources"] == [{"index": 1}]

    def test_tenants_are_isolated(self):
        cache = AnswerCache()
        cache.set_answer("q", {"answer": "a"}, tenant="acme")
        assert cache.get_answer("q", tenant="acme") is not None
        assert cache.get_answer("q", tenant="globex") is None
        assert cache.get_answer("q") is None
        assert AnswerCache.make_key("Q!", "acme") == "acme::q"


class TestRerankCache:
    def test_scores_keyed_by_content_hash(self):
        cache = RerankCache()
        cache.set_score("How do I reset it?", "passage one", 8.0)
        assert cache.get_score("how do i reset it", "passage one") == 8.0
        assert cache.get_score("how do i reset it", "passage two") is None

    def test_set_scores_merges(self):
        cache = RerankCache()
        cache.set_scores("q", {"h1": 3.0})
        cache.set_scores("q", {"h2": 9.0})
        assert cache.get_scores("q") == {"h1": 3.0, "h2": 9.0}
        assert len(cache) == 1

    def test_questions_sharing_a_prefix_share_scores(self):
        cache = RerankCache()
        prefix = "x" * 50
        cache.set_score(prefix + " first ending", "passage", 6.0)
        assert cache.get_score(prefix + " another ending", "passage") == 6.0

    def test_content_hash_is_fnv(self):
        assert content_hash("") == "cbf29ce484222325"


class TestCacheTier:
    def test_from_config_and_stats(self):
        tier = CacheTier.from_config(CacheConfig(query_rewrite_max_size=7, answer_max_size=3, ttl_seconds=60))
        assert tier.query_rewrite.max_size == 7
        assert tier.answer.max_size == 3
        assert tier.rerank.ttl_seconds == 60

        stats = tier.stats()
        assert set(stats) == {"query_rewrite", "rerank", "answer"}
        assert stats["answer"]["name"] == "answer"

    def test_injected_empty_caches_are_kept(self):
        answer = AnswerCache(max_size=3)
        rewrite = QueryRewriteCache(max_size=4)
        tier = CacheTier(query_rewrite=rewrite, answer=answer)
        assert tier.answer is answer
        assert tier.query_rewrite is rewrite
        assert tier.answer.max_size == 3

    def test_clear_empties_every_cache(self):
        tier = CacheTier()
        tier.query_rewrite.set_rewrite("q", "rewritten")
        tier.answer.set_answer("q", {"answer": "a"})
        tier.clear()
        assert len(tier.query_rewrite) == 0
        assert len(tier.answer) == 0

    def test_rewrite_cache_round_trip(self):
        cache = QueryRewriteCache()
        cache.set_rewrite("raw", "expanded")
        assert cache.get_rewrite("raw") == "expanded"
