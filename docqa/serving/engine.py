"""
Retrieval Engine
-----------------
Facade over the whole ingest / answer lifecycle.

Ingest:

    parent chunks -> ChunkHierarchyStore
    child texts   -> BatchEmbeddingScheduler -> VectorIndex.add()

Answer:

    question
        |
        v
    AnswerCache ............................ hit -> return (cached=True)
        |
        v
    QueryRewriter (QueryRewriteCache) -> embed
        |
        v
    MultiStrategyRetriever (semantic + HyDE + keyword + metadata, RRF)
        |
        v
    relevance filter (distance <= 2.0) -> CompositeScorer
        |
        v
    HierarchicalExpander (children -> parents, or mixed_fallback)
        |
        v
    LLMReranker (RerankCache)
        |
        v
    AnswerSynthesizer (NarrativeAssembler for the top chunk)
        |
        v
    AnswerResult -> AnswerCache

The outer answer() method is decorated with @traceable so LangSmith
captures the full chain in a single trace.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Optional, Union

from langsmith import traceable
from loguru import logger

from docqa.cache.result_cache import CacheTier
from docqa.config import EngineConfig
from docqa.embedding.scheduler import BatchEmbeddingScheduler
from docqa.generation.generator import AnswerSynthesizer
from docqa.generation.prompts import NO_CONTEXT_RESPONSE
from docqa.interfaces import EmbedFn, GenerationOracle, KeywordSearch, VectorIndex
from docqa.retrieval.assembler import NarrativeAssembler
from docqa.retrieval.expander import HierarchicalExpander
from docqa.retrieval.query_rewriter import QueryRewriter
from docqa.retrieval.reranker import LLMReranker
from docqa.retrieval.retriever import MultiStrategyRetriever
from docqa.retrieval.scorer import CompositeScorer
from docqa.schemas import AnswerResult, ChildChunk, ContextChunk, ParentChunk
from docqa.store.hierarchy import ChunkHierarchyStore
from docqa.utils.helpers import clamp

GENERATION_FALLBACK_CONFIDENCE = 0.3
RETRIEVAL_FALLBACK_PENALTY = 0.8

ParentInput = Union[ParentChunk, dict[str, Any]]
MetadataInput = Union[dict[str, Any], list[dict[str, Any]], None]


def compute_confidence(chunks: list[ContextChunk], retrieval_fallback: bool) -> float:
    """0.6 * mean of top-3 final scores + 0.4 * coverage, penalised in fallback mode."""
    if not chunks:
        return 0.0
    top = sorted((c.final_score for c in chunks), reverse=True)[:3]
    coverage = min(len(chunks) / 3, 1.0)
    confidence = 0.6 * (sum(top) / len(top)) + 0.4 * coverage
    if retrieval_fallback:
        confidence *= RETRIEVAL_FALLBACK_PENALTY
    return clamp(confidence)


class RetrievalEngine:
    """
    Hybrid retrieval and re-ranking engine for document question answering.

    Usage:
        engine = RetrievalEngine(vector_index=index, embed_fn=embedder.embed,
                                 oracle=oracle, keyword_search=index)
        await engine.ingest("manual", child_texts, parents, child_parent_ids)
        result = await engine.answer("How do I reset the device?")
        print(result.answer, result.confidence)
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        embed_fn: EmbedFn,
        oracle: Optional[GenerationOracle] = None,
        keyword_search: Optional[KeywordSearch] = None,
        config: Optional[EngineConfig] = None,
        store: Optional[ChunkHierarchyStore] = None,
        caches: Optional[CacheTier] = None,
        scheduler: Optional[BatchEmbeddingScheduler] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        cfg = config or EngineConfig()
        self.config = cfg
        self.vector_index = vector_index
        self.embed_fn = embed_fn
        self.oracle = oracle

        # Empty stores and caches are falsy (__len__), so test against None
        self.store = store if store is not None else ChunkHierarchyStore.from_config(cfg.store)
        self.caches = caches if caches is not None else CacheTier.from_config(cfg.cache)
        self.scheduler = scheduler if scheduler is not None else BatchEmbeddingScheduler.from_config(cfg.scheduler)

        self.rewriter = QueryRewriter.from_config(cfg.rewrite, cache=self.caches.query_rewrite, oracle=oracle)
        self.retriever = MultiStrategyRetriever.from_config(
            cfg.retrieval,
            vector_index=vector_index,
            keyword_search=keyword_search,
            oracle=oracle,
            embed_fn=embed_fn,
            now=now,
        )
        self.scorer = CompositeScorer(weights=cfg.scoring, now=now)
        self.expander = HierarchicalExpander(
            self.store,
            scorer=self.scorer,
            fallback_distance_threshold=cfg.expansion.fallback_distance_threshold,
        )
        self.reranker = LLMReranker.from_config(cfg.rerank, oracle=oracle, cache=self.caches.rerank)
        self.assembler = NarrativeAssembler(self.store, enabled=cfg.assembly.enabled)
        self.synthesizer = AnswerSynthesizer.from_config(cfg.generation, oracle=oracle, assembler=self.assembler)

        logger.info(
            f"[RetrievalEngine] Ready | oracle={'yes' if oracle else 'no'} | "
            f"keyword_search={'yes' if keyword_search else 'no'} | "
            f"batch={self.scheduler.batch_size}x{self.scheduler.max_concurrent_batches}"
        )

    # --- Ingestion ------------------------------------------------------------

    async def ingest(
        self,
        document_id: str,
        child_texts: list[str],
        parent_chunks: list[ParentInput],
        child_parent_ids: Optional[list[Optional[str]]] = None,
        metadata: MetadataInput = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[list[float]]:
        """
        Store parents, embed children in mini-batches, index what succeeded.

        Returns the successful embeddings in batch order. Children of failed
        or cancelled batches are not indexed; their ids are listed under
        dropped_chunk_ids in the processing status.

        Raises ValueError for malformed input before any work is done.
        """
        if not document_id or not str(document_id).strip():
            raise ValueError("document_id must be a non-empty string")
        if not child_texts:
            raise ValueError("child_texts must contain at least one text")

        parents = [self._coerce_parent(document_id, p) for p in parent_chunks]
        self._validate_links(document_id, parents)
        parent_ids = self._resolve_child_parents(child_texts, parents, child_parent_ids)
        child_meta = self._resolve_child_metadata(child_texts, metadata)

        if parents:
            self.store.store_parents(parents)

        chunk_ids = [f"{document_id}_c{i}" for i in range(len(child_texts))]
        run = await self.scheduler.run(
            document_id,
            list(child_texts),
            self.embed_fn,
            cancel_event=cancel_event,
            chunk_ids=chunk_ids,
        )

        children = [
            ChildChunk(
                id=chunk_ids[i],
                content=child_texts[i],
                embedding=vector,
                parent_id=parent_ids[i],
                metadata={
                    "document_id": document_id,
                    "chunk_index": i,
                    "total_chunks": len(child_texts),
                    "text_length": len(child_texts[i]),
                    **child_meta[i],
                    "parent_id": parent_ids[i],
                },
            )
            for i, vector in enumerate(run.aligned())
            if vector is not None
        ]
        if children:
            await self.vector_index.add(children)
            # New content can change any cached answer
            self.caches.answer.clear()

        logger.info(
            f"[RetrievalEngine] Ingested {document_id!r}: {len(parents)} parents, "
            f"{len(children)}/{len(child_texts)} children indexed"
        )
        return run.embeddings

    @staticmethod
    def _coerce_parent(document_id: str, parent: ParentInput) -> ParentChunk:
        if isinstance(parent, ParentChunk):
            p = parent
        elif isinstance(parent, dict):
            p = ParentChunk(**{"document_id": document_id, **parent})
        else:
            raise ValueError(f"Unsupported parent chunk type: {type(parent).__name__}")
        if p.document_id != document_id:
            raise ValueError(
                f"Parent {p.id!r} belongs to document {p.document_id!r}, not {document_id!r}"
            )
        return p

    def _validate_links(self, document_id: str, parents: list[ParentChunk]) -> None:
        batch = {p.id: p for p in parents}
        for p in parents:
            for link in (p.previous_chunk_id, p.next_chunk_id):
                if link is None:
                    continue
                if link in batch:
                    continue
                if self.store.has_parent(link):
                    stored = [q for q in self.store.get_document_parents(document_id) if q.id == link]
                    if stored:
                        continue
                    raise ValueError(f"Parent {p.id!r} links to {link!r} in another document")
                raise ValueError(f"Parent {p.id!r} links to unknown parent {link!r}")

    def _resolve_child_parents(
        self,
        child_texts: list[str],
        parents: list[ParentChunk],
        child_parent_ids: Optional[list[Optional[str]]],
    ) -> list[Optional[str]]:
        if child_parent_ids is None:
            if not parents:
                return [None] * len(child_texts)
            if len(parents) == 1:
                return [parents[0].id] * len(child_texts)
            if len(parents) == len(child_texts):
                return [p.id for p in parents]
            raise ValueError(
                f"child_parent_ids is required when {len(parents)} parents "
                f"are given for {len(child_texts)} children"
            )

        if len(child_parent_ids) != len(child_texts):
            raise ValueError(
                f"child_parent_ids has {len(child_parent_ids)} entries for {len(child_texts)} children"
            )
        known = {p.id for p in parents}
        for pid in child_parent_ids:
            if pid is not None and pid not in known and not self.store.has_parent(pid):
                raise ValueError(f"Child references unknown parent {pid!r}")
        return list(child_parent_ids)

    @staticmethod
    def _resolve_child_metadata(child_texts: list[str], metadata: MetadataInput) -> list[dict[str, Any]]:
        if metadata is None:
            return [{} for _ in child_texts]
        if isinstance(metadata, dict):
            return [dict(metadata) for _ in child_texts]
        if len(metadata) != len(child_texts):
            raise ValueError(f"metadata has {len(metadata)} entries for {len(child_texts)} children")
        return [dict(m or {}) for m in metadata]

    # --- Question answering -----------------------------------------------------

    @traceable(name="answer_question", run_type="chain")
    async def answer(self, question: str, tenant: Optional[str] = None) -> AnswerResult:
        if not question or not question.strip():
            raise ValueError("question must be a non-empty string")
        question = question.strip()
        logger.info(f"[RetrievalEngine] Question: {question[:100]!r} tenant={tenant!r}")

        cached = self.caches.answer.get_answer(question, tenant)
        if cached is not None:
            logger.info("[RetrievalEngine] Answer cache hit")
            return AnswerResult(**cached)

        timings: dict[str, float] = {}
        t0 = time.perf_counter()

        # -- 1. Rewrite + embed ---------------------------------------------------
        rewritten = await self.rewriter.rewrite(question)
        query_embedding: Optional[list[float]] = None
        try:
            query_embedding = (await self.embed_fn([rewritten]))[0]
        except Exception as exc:
            logger.warning(f"[RetrievalEngine] Query embedding failed: {exc}")
        timings["rewrite_embed"] = _ms_since(t0)

        # -- 2. Retrieve ----------------------------------------------------------
        t1 = time.perf_counter()
        fused = await self.retriever.retrieve(query_embedding, question, tenant=tenant)
        timings["retrieval"] = _ms_since(t1)

        # -- 3. Score + expand ----------------------------------------------------
        t2 = time.perf_counter()
        threshold = self.config.retrieval.relevance_distance_threshold
        relevant = [h for h in fused.hits if h.distance <= threshold]
        scored = self.scorer.score(relevant, question)
        expansion = self.expander.expand(scored, question, raw_hits=fused.hits)
        timings["scoring_expansion"] = _ms_since(t2)

        retrieval_fallback = fused.fallback or expansion.fallback
        metadata: dict[str, Any] = {
            "rewritten_query": rewritten,
            "tenant": tenant,
            "retrieval_method": expansion.retrieval_method,
            "retrieval_fallback": retrieval_fallback,
            "generation_fallback": False,
            "strategy_counts": fused.strategy_counts,
            "failed_strategies": fused.failed_strategies,
            "candidates": len(fused.hits),
            "relevant_candidates": len(relevant),
            "parents_resolved": expansion.parents_resolved,
        }

        if not expansion.chunks:
            timings["total"] = _ms_since(t0)
            metadata["latency_ms"] = timings
            logger.info("[RetrievalEngine] No relevant context found")
            return AnswerResult(
                question=question,
                answer=NO_CONTEXT_RESPONSE,
                sources=[],
                confidence=0.0,
                metadata=metadata,
            )

        # -- 4. Rerank ------------------------------------------------------------
        t3 = time.perf_counter()
        ranked = await self.reranker.rerank(expansion.chunks, question)
        timings["rerank"] = _ms_since(t3)

        # -- 5. Generate ----------------------------------------------------------
        t4 = time.perf_counter()
        synthesis = await self.synthesizer.synthesize(question, ranked)
        timings["generation"] = _ms_since(t4)
        timings["total"] = _ms_since(t0)

        if synthesis.generation_fallback:
            confidence = GENERATION_FALLBACK_CONFIDENCE
        else:
            confidence = compute_confidence(synthesis.context_chunks, retrieval_fallback)

        metadata.update(
            generation_fallback=synthesis.generation_fallback,
            context_chunks=len(synthesis.context_chunks),
            context_chars=synthesis.context_chars,
            narrative=synthesis.narrative,
            latency_ms={k: round(v, 1) for k, v in timings.items()},
        )
        result = AnswerResult(
            question=question,
            answer=synthesis.answer,
            sources=synthesis.sources,
            confidence=confidence,
            metadata=metadata,
        )

        if not synthesis.generation_fallback:
            self.caches.answer.set_answer(question, result.to_dict(), tenant)

        logger.info(
            f"[RetrievalEngine] Answered | method={expansion.retrieval_method} "
            f"sources={len(result.sources)} confidence={confidence:.2f} "
            f"total={timings['total']:.0f}ms"
        )
        return result

    # --- Introspection ----------------------------------------------------------

    def get_processing_status(self, document_id: str) -> Optional[dict[str, Any]]:
        return self.scheduler.get_processing_status(document_id)

    def get_cache_stats(self) -> dict[str, Any]:
        return {
            **self.caches.stats(),
            "store": self.store.stats(),
            "scheduler": self.scheduler.get_system_metrics(),
        }

    def clear_caches(self) -> None:
        self.caches.clear()


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def build_default_engine(config: Optional[EngineConfig] = None, index_dir: Optional[str] = None):
    """
    Engine wired to the shipped collaborators: FAISS + BM25 index, OpenAI
    embeddings and the tiered LLM Oracle. Loads a persisted index from
    index_dir when one exists there.

    Returns (engine, index).
    """
    from pathlib import Path

    from docqa.embedding.embedder import Embedder  # lazy import keeps import graph clean
    from docqa.embedding.faiss_index import FAISSIndex
    from docqa.generation.oracle import LLMOracle

    cfg = config or EngineConfig()
    if index_dir and (Path(index_dir) / "faiss.index").exists():
        index = FAISSIndex.load(Path(index_dir))
    else:
        index = FAISSIndex(dimensions=cfg.embedding.dimensions)

    embedder = Embedder.from_config(cfg.embedding)
    oracle = LLMOracle.from_config(cfg.generation)
    engine = RetrievalEngine(
        vector_index=index,
        embed_fn=embedder.embed,
        oracle=oracle,
        keyword_search=index,
        config=cfg,
    )
    return engine, index
