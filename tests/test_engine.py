"""End-to-end tests of RetrievalEngine with fake collaborators."""

import asyncio

import pytest
from conftest import FIXED_NOW, FakeKeywordSearch, FakeOracle, FakeVectorIndex, fake_embed

from docqa.cache.result_cache import AnswerCache, CacheTier
from docqa.config import EngineConfig
from docqa.embedding.scheduler import BatchEmbeddingScheduler
from docqa.generation.prompts import GENERATION_FALLBACK_PREFIX, NO_CONTEXT_RESPONSE
from docqa.schemas import ContextChunk, ParentChunk
from docqa.serving.engine import RetrievalEngine, compute_confidence
from docqa.store.hierarchy import ChunkHierarchyStore

PARENTS = [
    {
        "id": "manual_p0",
        "content": "Resetting the device: hold the reset button for ten seconds until the screen blinks.",
        "metadata": {"document_name": "manual.txt", "next_chunk_id": "manual_p1", "position_in_document": 0},
    },
    {
        "id": "manual_p1",
        "content": "Battery care: charge the battery fully before first use. The warranty covers the battery.",
        "metadata": {"document_name": "manual.txt", "previous_chunk_id": "manual_p0", "position_in_document": 1},
    },
]
CHILDREN = [
    "hold the reset button on the device",
    "the screen blinks after a reset",
    "charge the battery fully",
    "the warranty covers the battery",
]
CHILD_PARENTS = ["manual_p0", "manual_p0", "manual_p1", "manual_p1"]


async def ingest_manual(engine: RetrievalEngine):
    return await engine.ingest(
        "manual",
        CHILDREN,
        PARENTS,
        child_parent_ids=CHILD_PARENTS,
        metadata={"document_name": "manual.txt"},
    )


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_stores_parents_and_indexes_children(self, engine, fake_index):
        embeddings = await ingest_manual(engine)

        assert len(embeddings) == 4
        assert [c.id for c in fake_index.children] == ["manual_c0", "manual_c1", "manual_c2", "manual_c3"]
        assert [c.parent_id for c in fake_index.children] == CHILD_PARENTS
        assert fake_index.children[2].metadata["chunk_index"] == 2
        assert fake_index.children[2].metadata["document_name"] == "manual.txt"
        assert engine.store.has_parent("manual_p1")

        status = engine.get_processing_status("manual")
        assert status["status"] == "completed"
        assert status["total_batches"] == 1

    @pytest.mark.asyncio
    async def test_single_parent_owns_every_child(self, engine, fake_index):
        await engine.ingest("solo", ["a reset", "b reset"], [{"id": "solo_p0", "content": "all of it"}])
        assert {c.parent_id for c in fake_index.children} == {"solo_p0"}

    @pytest.mark.asyncio
    async def test_children_without_parents(self, engine, fake_index):
        await engine.ingest("flat", ["only children"], [])
        assert fake_index.children[0].parent_id is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"document_id": "", "child_texts": ["x"], "parent_chunks": []}, "document_id"),
            ({"document_id": "d", "child_texts": [], "parent_chunks": []}, "child_texts"),
            (
                {
                    "document_id": "d",
                    "child_texts": ["x", "y", "z"],
                    "parent_chunks": [{"id": "d_p0", "content": "a"}, {"id": "d_p1", "content": "b"}],
                },
                "child_parent_ids",
            ),
            (
                {
                    "document_id": "d",
                    "child_texts": ["x"],
                    "parent_chunks": [{"id": "d_p0", "content": "a"}],
                    "child_parent_ids": ["nope"],
                },
                "unknown parent",
            ),
            (
                {
                    "document_id": "d",
                    "child_texts": ["x"],
                    "parent_chunks": [{"id": "d_p0", "content": "a", "metadata": {"next_chunk_id": "ghost"}}],
                },
                "unknown parent",
            ),
            (
                {
                    "document_id": "d",
                    "child_texts": ["x"],
                    "parent_chunks": [ParentChunk(id="e_p0", document_id="e", content="a")],
                },
                "belongs to document",
            ),
        ],
    )
    async def test_invalid_input_is_rejected_before_work(self, engine, fake_index, kwargs, message):
        with pytest.raises(ValueError, match=message):
            await engine.ingest(**kwargs)
        assert fake_index.children == []
        assert len(engine.store) == 0

    @pytest.mark.asyncio
    async def test_link_into_another_document_is_rejected(self, engine):
        await ingest_manual(engine)
        with pytest.raises(ValueError, match="another document"):
            await engine.ingest(
                "other",
                ["x"],
                [{"id": "other_p0", "content": "a", "metadata": {"previous_chunk_id": "manual_p1"}}],
            )

    @pytest.mark.asyncio
    async def test_failed_batches_drop_their_children(self, fake_index, fake_oracle):
        async def flaky_embed(texts):
            if "charge the battery fully" in texts:
                raise RuntimeError("embedding API down")
            return await fake_embed(texts)

        config = EngineConfig()
        config.scheduler.batch_size = 2
        engine = RetrievalEngine(fake_index, flaky_embed, fake_oracle, config=config, now=lambda: FIXED_NOW)

        embeddings = await ingest_manual(engine)

        assert len(embeddings) == 2
        assert [c.id for c in fake_index.children] == ["manual_c0", "manual_c1"]
        assert engine.get_processing_status("manual")["dropped_chunk_ids"] == ["manual_c2", "manual_c3"]

    @pytest.mark.asyncio
    async def test_cancelled_ingest(self, engine, fake_index):
        cancel = asyncio.Event()
        cancel.set()
        assert await engine.ingest("manual", CHILDREN, PARENTS, CHILD_PARENTS, cancel_event=cancel) == []
        assert fake_index.children == []
        assert engine.get_processing_status("manual")["status"] == "failed"


class TestAnswer:
    @pytest.mark.asyncio
    async def test_full_pipeline(self, engine, fake_oracle):
        await ingest_manual(engine)

        result = await engine.answer("How do I reset the device?")

        assert result.answer == FakeOracle.DEFAULTS["answer"]
        assert result.cached is False
        assert 0.0 < result.confidence <= 1.0
        assert result.sources[0]["chunk_id"] == "manual_p0"
        assert result.sources[0]["child_chunks_count"] == 2

        meta = result.metadata
        assert meta["retrieval_method"] == "hierarchical"
        assert meta["retrieval_fallback"] is False
        assert meta["generation_fallback"] is False
        assert meta["narrative"]["has_following"] is True
        assert {"retrieval", "rerank", "generation", "total"} <= set(meta["latency_ms"])
        assert fake_oracle.count("rerank") >= 1
        assert fake_oracle.count("answer") == 1

    @pytest.mark.asyncio
    async def test_repeat_question_is_served_from_cache(self, engine, fake_oracle):
        await ingest_manual(engine)
        first = await engine.answer("How do I reset the device?")
        calls = len(fake_oracle.calls)

        second = await engine.answer("how do i reset the device")

        assert second.cached is True
        assert second.answer == first.answer
        assert len(fake_oracle.calls) == calls

    @pytest.mark.asyncio
    async def test_ingest_invalidates_answer_cache(self, engine):
        await ingest_manual(engine)
        await engine.answer("How do I reset the device?")
        await engine.ingest("extra", ["reset tips"], [])
        assert (await engine.answer("How do I reset the device?")).cached is False

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_cached_answers(self, engine):
        await ingest_manual(engine)
        await engine.answer("How do I reset the device?", tenant="acme")
        other = await engine.answer("How do I reset the device?", tenant="globex")
        assert other.cached is False

    @pytest.mark.asyncio
    async def test_no_documents_gives_no_context_answer(self, engine):
        result = await engine.answer("How do I reset the device?")
        assert result.answer == NO_CONTEXT_RESPONSE
        assert result.confidence == 0.0
        assert result.sources == []

    @pytest.mark.asyncio
    async def test_generation_failure_falls_back_to_excerpt(self, fake_index):
        oracle = FakeOracle(answer=RuntimeError("provider down"))
        engine = RetrievalEngine(
            fake_index, fake_embed, oracle, keyword_search=FakeKeywordSearch(fake_index), now=lambda: FIXED_NOW
        )
        await ingest_manual(engine)

        result = await engine.answer("How do I reset the device?")

        assert result.answer.startswith(GENERATION_FALLBACK_PREFIX)
        assert result.confidence == 0.3
        assert result.metadata["generation_fallback"] is True
        assert (await engine.answer("How do I reset the device?")).cached is False

    @pytest.mark.asyncio
    async def test_vector_outage_still_answers_from_keywords(self, fake_oracle):
        index = FakeVectorIndex()
        engine = RetrievalEngine(
            index, fake_embed, fake_oracle, keyword_search=FakeKeywordSearch(index), now=lambda: FIXED_NOW
        )
        await ingest_manual(engine)
        index.fail = True

        result = await engine.answer("What does the warranty cover?")

        assert "semantic" in result.metadata["failed_strategies"]
        assert result.sources[0]["chunk_id"] == "manual_p1"

    @pytest.mark.asyncio
    async def test_empty_question(self, engine):
        with pytest.raises(ValueError):
            await engine.answer("   ")


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_cache_stats_and_clear(self, engine):
        await ingest_manual(engine)
        await engine.answer("How do I reset the device?")

        stats = engine.get_cache_stats()
        assert {"query_rewrite", "rerank", "answer", "store", "scheduler"} <= set(stats)
        assert stats["answer"]["size"] == 1
        assert stats["store"]["size"] == 2

        engine.clear_caches()
        assert engine.get_cache_stats()["answer"]["size"] == 0

    def test_unknown_document_status(self, engine):
        assert engine.get_processing_status("missing") is None

    def test_injected_empty_store_and_caches_are_kept(self):
        store = ChunkHierarchyStore(max_size=5)
        caches = CacheTier(answer=AnswerCache(max_size=3))
        scheduler = BatchEmbeddingScheduler(batch_size=4)

        engine = RetrievalEngine(
            FakeVectorIndex(), fake_embed, FakeOracle(),
            store=store, caches=caches, scheduler=scheduler, now=lambda: FIXED_NOW,
        )

        assert engine.store is store
        assert engine.caches is caches
        assert engine.scheduler is scheduler
        assert engine.get_cache_stats()["store"]["max_size"] == 5


class TestConfidence:
    def chunk(self, score: float) -> ContextChunk:
        return ContextChunk(chunk_id=str(score), content="", metadata={}, final_score=score)

    def test_formula(self):
        chunks = [self.chunk(1.0), self.chunk(1.0), self.chunk(1.0)]
        assert compute_confidence(chunks, False) == pytest.approx(1.0)
        assert compute_confidence(chunks, True) == pytest.approx(0.8)

    def test_coverage_term(self):
        assert compute_confidence([self.chunk(0.5)], False) == pytest.approx(0.6 * 0.5 + 0.4 / 3)

    def test_empty(self):
        assert compute_confidence([], False) == 0.0
