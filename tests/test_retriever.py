"""Unit tests for the multi-strategy retriever and RRF fusion."""

from datetime import timedelta

import pytest
from conftest import FIXED_NOW, FakeKeywordSearch, FakeOracle, FakeVectorIndex, embed_text, fake_embed, make_child

from docqa.retrieval.retriever import (
    MultiStrategyRetriever,
    fuse,
    hits_from_results,
    metadata_filters_for,
    stable_doc_id,
)
from docqa.schemas import RetrievalHit


def hit(chunk_id: str, distance: float = 0.1, **metadata) -> RetrievalHit:
    return RetrievalHit(chunk_id=chunk_id, content=f"content of {chunk_id}", distance=distance, metadata=metadata)


def hardware_children():
    return [
        make_child("ram_c0", "RAM is the memory a computer uses for running programs.", "ram_p0",
                   document_name="ram.txt", chunk_index=0),
        make_child("cpu_c0", "The CPU processor executes instructions.", "cpu_p0",
                   document_name="cpu.txt", chunk_index=0),
        make_child("disk_c0", "Disk storage keeps data after power is off.", "disk_p0",
                   document_name="disk.txt", chunk_index=0),
        make_child("net_c0", "The network card connects the device to a network.", "net_p0",
                   document_name="net.txt", chunk_index=0),
        make_child("bat_c0", "The battery powers the device when unplugged.", "bat_p0",
                   document_name="battery.txt", chunk_index=0),
        make_child("warranty_c0", "The warranty covers the screen for one year.", "war_p0",
                   document_name="warranty.txt", chunk_index=0),
    ]


class TestFusion:
    def test_weighted_rrf_scores(self):
        fused = fuse(
            [
                ("semantic", 0.4, [hit("a", 0.1), hit("b", 0.2)]),
                ("keyword", 0.2, [hit("b", 0.5), hit("a", 0.6)]),
            ],
            rrf_k=60,
        )
        scores = {h.chunk_id: h.score for h in fused}
        assert scores["a"] == pytest.approx(0.4 / 61 + 0.2 / 62)
        assert scores["b"] == pytest.approx(0.4 / 62 + 0.2 / 61)
        assert [h.chunk_id for h in fused] == ["a", "b"]
        assert fused[0].strategies == ["semantic", "keyword"]

    def test_internal_ties_do_not_change_order(self):
        forward = [hit("x", 0.3), hit("y", 0.3), hit("z", 0.1)]
        backward = list(reversed(forward))
        a = fuse([("semantic", 0.4, forward)])
        b = fuse([("semantic", 0.4, backward)])
        assert [(h.chunk_id, h.score) for h in a] == [(h.chunk_id, h.score) for h in b]
        assert [h.chunk_id for h in a] == ["z", "x", "y"]

    def test_duplicates_within_a_strategy_count_once(self):
        fused = fuse([("keyword", 0.2, [hit("a", 0.5), hit("a", 0.5), hit("b", 0.5)])])
        scores = {h.chunk_id: h.score for h in fused}
        assert scores["a"] == pytest.approx(0.2 / 61)
        assert scores["b"] == pytest.approx(0.2 / 62)

    def test_keyword_hits_rank_by_lexical_score(self):
        alpha = RetrievalHit(chunk_id="alpha", content="a", distance=0.5, lexical_score=0.1)
        zeta = RetrievalHit(chunk_id="zeta", content="z", distance=0.5, lexical_score=9.0)
        fused = fuse([("keyword", 0.2, [alpha, zeta])], limit=1)
        assert [h.chunk_id for h in fused] == ["zeta"]
        assert fused[0].lexical_score == 9.0

    def test_limit(self):
        fused = fuse([("semantic", 0.4, [hit(c, i / 10) for i, c in enumerate("abcdefg")])], limit=3)
        assert [h.chunk_id for h in fused] == ["a", "b", "c"]

    def test_stable_doc_id_fallbacks(self):
        assert stable_doc_id(hit("c1")) == "c1"
        named = RetrievalHit(chunk_id="", content="x", distance=0.5, metadata={"document_name": "f", "chunk_index": 2})
        assert stable_doc_id(named) == "f_2"
        anonymous = RetrievalHit(chunk_id="", content="x", distance=0.5)
        assert len(stable_doc_id(anonymous)) == 16


class TestMetadataFilters:
    def test_cues(self):
        assert metadata_filters_for("show me the pdf") == {"file_type": "pdf"}
        assert metadata_filters_for("translate to english") == {"language": "en"}
        assert metadata_filters_for("a detailed guide") == {"file_size": {"$gte": 50_000}}
        assert metadata_filters_for("how do I reset it") == {}

    def test_recent_uses_thirty_day_window(self):
        filters = metadata_filters_for("latest release notes", FIXED_NOW)
        assert filters == {"uploaded_at": {"$gte": (FIXED_NOW - timedelta(days=30)).isoformat()}}

    def test_code_cue_wins_over_document_cue(self):
        assert metadata_filters_for("code in this document")["file_type"] == "txt"

    def test_cues_match_whole_words(self):
        assert metadata_filters_for("renewal options") == {}


class TestHitsFromResults:
    def test_converts_columns(self):
        results = {
            "ids": [["a", "b"]],
            "documents": [["A", "B"]],
            "distances": [[0.1, 0.4]],
            "metadatas": [[{"parent_id": "p"}, None]],
        }
        hits = hits_from_results(results, "semantic")
        assert [(h.chunk_id, h.content, h.distance) for h in hits] == [("a", "A", 0.1), ("b", "B", 0.4)]
        assert hits[0].parent_id == "p"
        assert hits[1].metadata == {}


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_all_strategies_contribute(self):
        index = FakeVectorIndex(hardware_children())
        oracle = FakeOracle(hyde="Memory modules such as RAM hold running programs.")
        retriever = MultiStrategyRetriever(
            index, FakeKeywordSearch(index), oracle, fake_embed, max_results=5, now=lambda: FIXED_NOW
        )

        fused = await retriever.retrieve(embed_text("memory"), "Which memory is in the latest device?")

        assert fused.fallback is False
        assert fused.failed_strategies == []
        assert set(fused.strategy_counts) == {"semantic", "hyde", "keyword", "metadata"}
        assert fused.strategy_counts["keyword"] > 0
        assert fused.hits[0].chunk_id == "ram_c0"
        assert len(fused.hits) <= 5
        # semantic asks for 2x max_results, HyDE and metadata for max_results
        assert sorted(call["k"] for call in index.search_calls) == [5, 5, 10]
        assert oracle.count("hyde") == 1

    @pytest.mark.asyncio
    async def test_what_is_ram_is_found_semantically(self):
        index = FakeVectorIndex(hardware_children())
        keyword = FakeKeywordSearch(index)
        retriever = MultiStrategyRetriever(index, keyword, None, fake_embed, max_results=5)

        fused = await retriever.retrieve(embed_text("what is ram"), "What is RAM?")

        # RAM is too short to be a keyword, so only the semantic strategy ran
        assert keyword.keywords == []
        assert "ram_c0" in [h.chunk_id for h in fused.hits]
        assert fused.hits[0].chunk_id == "ram_c0"

    @pytest.mark.asyncio
    async def test_missing_embedding_fails_only_vector_strategies(self):
        index = FakeVectorIndex(hardware_children())
        retriever = MultiStrategyRetriever(index, FakeKeywordSearch(index), None, fake_embed)

        fused = await retriever.retrieve(None, "warranty screen coverage")

        assert fused.failed_strategies == ["semantic"]
        assert fused.fallback is False
        assert [h.chunk_id for h in fused.hits] == ["warranty_c0"]
        assert fused.hits[0].distance == 0.5

    @pytest.mark.asyncio
    async def test_semantic_only_fallback_when_everything_fails(self):
        index = FakeVectorIndex(hardware_children(), fail_times=1)
        retriever = MultiStrategyRetriever(index, None, None, fake_embed, max_results=3)

        fused = await retriever.retrieve(embed_text("battery"), "battery life")

        assert fused.fallback is True
        assert fused.failed_strategies == ["semantic"]
        assert fused.strategy_counts == {"semantic_fallback": 3}
        assert fused.hits[0].chunk_id == "bat_c0"
        assert index.search_calls[-1]["k"] == 3

    @pytest.mark.asyncio
    async def test_total_failure_returns_empty_fallback(self):
        index = FakeVectorIndex(hardware_children(), fail=True)
        retriever = MultiStrategyRetriever(
            index, FakeKeywordSearch(index, fail=True), FakeOracle(hyde=RuntimeError("down")), fake_embed
        )

        fused = await retriever.retrieve(embed_text("battery"), "battery replacement")

        assert fused.fallback is True
        assert fused.hits == []
        assert sorted(fused.failed_strategies) == ["hyde", "keyword", "semantic"]

    @pytest.mark.asyncio
    async def test_tenant_scoping(self):
        children = [
            make_child("a_c0", "battery guide for acme", "a_p0", document_name="a.txt", chunk_index=0, tenant="acme"),
            make_child("g_c0", "battery guide for globex", "g_p0", document_name="g.txt", chunk_index=0, tenant="globex"),
        ]
        index = FakeVectorIndex(children)
        retriever = MultiStrategyRetriever(index, FakeKeywordSearch(index), None, fake_embed)

        fused = await retriever.retrieve(embed_text("battery"), "battery guide", tenant="acme")

        assert [h.chunk_id for h in fused.hits] == ["a_c0"]
        assert index.search_calls[0]["filters"] == {"tenant": "acme"}


class RankedKeywordSearch:
    """Returns fixed hits in relevance order, optionally with BM25 scores."""

    def __init__(self, scored: bool = True):
        self.scored = scored

    async def search_documents(self, keyword):
        hits = [
            {"id": "zeta", "content": "warranty terms in full", "document_name": "z.txt", "chunk_index": 0},
            {"id": "alpha", "content": "a passing warranty mention", "document_name": "a.txt", "chunk_index": 0},
        ]
        if self.scored:
            hits[0]["bm25_score"], hits[1]["bm25_score"] = 9.0, 0.1
        return hits


class TestKeywordRelevance:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("scored", [True, False])
    async def test_best_lexical_match_survives_truncation(self, scored):
        retriever = MultiStrategyRetriever(
            FakeVectorIndex(), RankedKeywordSearch(scored), None, fake_embed, max_results=1
        )

        fused = await retriever.retrieve(embed_text("warranty"), "warranty terms")

        assert [h.chunk_id for h in fused.hits] == ["zeta"]
