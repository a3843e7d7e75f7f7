"""Unit tests for query rewriting."""

import pytest
from conftest import FakeOracle

from docqa.cache.result_cache import QueryRewriteCache
from docqa.config import RewriteConfig
from docqa.retrieval.query_rewriter import QueryRewriter, expand_query


class TestExpandQuery:
    def test_short_definition_question(self):
        assert expand_query("What is RAM?") == (
            "What is RAM? which describe definition description meaning explanation "
            "information details overview summary guide"
        )

    def test_how_to_with_context_cue(self):
        expanded = expand_query("How to install the server on a slow network")
        assert expanded.startswith("How to install the server")
        assert "steps" in expanded
        assert "installation" in expanded
        assert "host" in expanded

    def test_word_cap(self):
        expanded = expand_query("how to fix the error when the api server and database are slow", max_words=20)
        assert len(expanded.split()) <= 20

    def test_synonyms_match_whole_words_only(self):
        assert "programming" not in expand_query("codec support options for playback")
        assert "programming" in expand_query("sample code for playback")

    def test_no_duplicate_words(self):
        words = expand_query("error error problem").lower().split()
        assert len(words) == len(set(words))


class TestQueryRewriter:
    @pytest.mark.asyncio
    async def test_rule_based_rewrite_is_cached(self):
        cache = QueryRewriteCache()
        rewriter = QueryRewriter(cache=cache)

        first = await rewriter.rewrite("What is RAM?")
        assert cache.get_rewrite("What is RAM?") == first
        assert await rewriter.rewrite("What is RAM?") == first
        assert cache.stats()["hits"] >= 1

    @pytest.mark.asyncio
    async def test_llm_rewrite_takes_first_line(self):
        oracle = FakeOracle(rewrite='"ram memory definition"\nextra commentary')
        rewriter = QueryRewriter.from_config(RewriteConfig(llm_rewrite_enabled=True), oracle=oracle)
        assert await rewriter.rewrite("What is RAM?") == "ram memory definition"
        assert oracle.calls[0][1] == "preprocessing"

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_rules(self):
        oracle = FakeOracle(rewrite=RuntimeError("unavailable"))
        rewriter = QueryRewriter(oracle=oracle, llm_rewrite_enabled=True)
        assert await rewriter.rewrite("What is RAM?") == expand_query("What is RAM?")

    @pytest.mark.asyncio
    async def test_oracle_unused_when_disabled(self):
        oracle = FakeOracle()
        await QueryRewriter(oracle=oracle).rewrite("reset steps")
        assert oracle.calls == []
