"""
Multi-Strategy Retriever
-------------------------
Runs four searches concurrently and fuses them with weighted Reciprocal
Rank Fusion:

    strategy     source                                   weight
    semantic     vector search on the query embedding     0.4
    hyde         vector search on an LLM-written passage  0.3
    keyword      lexical lookup of up to 3 keywords       0.2
    metadata     vector search with cue-derived filters   0.1

RRF score = sum over strategies of  w / (k + rank + 1),  k = 60, rank 0-based.

Each strategy's hits are put in canonical (distance, -lexical score, id)
order before ranking and the fused list is sorted by (-score, id), so ties
inside a strategy can never change the fused order. Keyword hits share one
distance, so their rank comes from the keyword search's own relevance.

A strategy that raises is logged and contributes nothing. If every
attempted strategy raises, a plain semantic search with k = max_results
is tried; if that fails too the result is empty with fallback=True.
"""
from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from langsmith import traceable
from loguru import logger

from docqa.config import RetrievalConfig
from docqa.generation.prompts import HYDE_PROMPT
from docqa.interfaces import EmbedFn, GenerationOracle, KeywordSearch, SearchResults, VectorIndex
from docqa.schemas import FusedResultSet, RetrievalHit, SourceStrategy
from docqa.utils.helpers import extract_keywords, fnv1a_64

KEYWORD_DEFAULT_DISTANCE = 0.5
RECENT_DAYS = 30
DETAILED_MIN_FILE_SIZE = 50_000

# Metadata fields copied from a keyword hit onto the RetrievalHit
_KEYWORD_META_FIELDS = (
    "document_name", "chunk_index", "total_chunks", "file_type", "file_size",
    "version", "uploaded_at", "language", "text_length", "parent_id",
    "document_id", "tenant",
)


def stable_doc_id(hit: RetrievalHit) -> str:
    """Chunk id, else document_name_chunk_index, else a content hash."""
    if hit.chunk_id:
        return hit.chunk_id
    name = hit.metadata.get("document_name")
    index = hit.metadata.get("chunk_index")
    if name is not None and index is not None:
        return f"{name}_{index}"
    return fnv1a_64(hit.content)


def metadata_filters_for(query_text: str, now: Optional[datetime] = None) -> dict[str, Any]:
    """
    Derive vector-search filters from lexical cues in the question.

    Empty dict means no cue matched.
    """
    words = set(re.findall(r"[a-z]+", query_text.lower()))
    filters: dict[str, Any] = {}
    if words & {"pdf", "document"}:
        filters["file_type"] = "pdf"
    if words & {"code", "script"}:
        filters["file_type"] = "txt"
    if words & {"english", "translate"}:
        filters["language"] = "en"
    if words & {"recent", "latest", "new"}:
        since = (now or datetime.now()) - timedelta(days=RECENT_DAYS)
        filters["uploaded_at"] = {"$gte": since.isoformat()}
    if words & {"detailed", "comprehensive"}:
        filters["file_size"] = {"$gte": DETAILED_MIN_FILE_SIZE}
    return filters


def hits_from_results(results: SearchResults, strategy: str) -> list[RetrievalHit]:
    """Convert column-oriented search results (query 0) into hits."""
    ids = (results.get("ids") or [[]])[0]
    docs = (results.get("documents") or [[]])[0]
    dists = (results.get("distances") or [[]])[0]
    metas = (results.get("metadatas") or [[]])[0]
    hits = []
    for i, chunk_id in enumerate(ids):
        hits.append(
            RetrievalHit(
                chunk_id=chunk_id,
                content=docs[i] if i < len(docs) else "",
                distance=float(dists[i]) if i < len(dists) else KEYWORD_DEFAULT_DISTANCE,
                metadata=dict(metas[i] or {}) if i < len(metas) else {},
                source_strategy=strategy,
            )
        )
    return hits


def fuse(
    ranked: Sequence[tuple[str, float, list[RetrievalHit]]],
    rrf_k: int = 60,
    limit: Optional[int] = None,
) -> list[RetrievalHit]:
    """
    Weighted RRF over (strategy, weight, hits) triples.

    The fused hit keeps the content/metadata of its first occurrence in
    strategy order; `strategies` lists every strategy that returned it.
    """
    scores: dict[str, float] = {}
    first: dict[str, RetrievalHit] = {}
    seen_in: dict[str, list[str]] = {}

    for strategy, weight, hits in ranked:
        canonical = sorted(hits, key=lambda h: (h.distance, -(h.lexical_score or 0.0), stable_doc_id(h)))
        seen_here: set[str] = set()
        rank = 0
        for hit in canonical:
            doc_id = stable_doc_id(hit)
            if doc_id in seen_here:
                continue
            seen_here.add(doc_id)
            scores[doc_id] = scores.get(doc_id, 0.0) + weight * (1.0 / (rrf_k + rank + 1))
            if doc_id not in first:
                first[doc_id] = hit
            seen_in.setdefault(doc_id, []).append(strategy)
            rank += 1

    ordered = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
    if limit is not None:
        ordered = ordered[:limit]

    fused = []
    for doc_id, score in ordered:
        src = first[doc_id]
        fused.append(
            RetrievalHit(
                chunk_id=src.chunk_id or doc_id,
                content=src.content,
                distance=src.distance,
                metadata=dict(src.metadata),
                source_strategy=src.source_strategy,
                score=score,
                strategies=list(seen_in[doc_id]),
                lexical_score=src.lexical_score,
            )
        )
    return fused


def _lexical_score(raw: dict[str, Any], position: int) -> float:
    """BM25 (or generic) score of a keyword hit, else 1/(position+1) in its result list."""
    for name in ("bm25_score", "score"):
        value = raw.get(name)
        if isinstance(value, (int, float)):
            return float(value)
    return 1.0 / (position + 1)


class _Skipped(Exception):
    """Strategy not applicable to this query (not a failure)."""


def _require_embedding(query_embedding: Optional[Sequence[float]]) -> None:
    if query_embedding is None:
        raise RuntimeError("no query embedding available")


class MultiStrategyRetriever:
    """
    Hybrid retriever over a VectorIndex and an optional KeywordSearch.

    HyDE needs both an Oracle and an embed function; without them it is
    skipped silently, as is the keyword strategy without a KeywordSearch.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        keyword_search: Optional[KeywordSearch] = None,
        oracle: Optional[GenerationOracle] = None,
        embed_fn: Optional[EmbedFn] = None,
        max_results: int = 5,
        rrf_k: int = 60,
        semantic_weight: float = 0.4,
        hyde_weight: float = 0.3,
        keyword_weight: float = 0.2,
        metadata_weight: float = 0.1,
        hyde_enabled: bool = True,
        hyde_timeout_seconds: float = 15.0,
        max_keywords: int = 3,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.vector_index = vector_index
        self.keyword_search = keyword_search
        self.oracle = oracle
        self.embed_fn = embed_fn
        self.max_results = max_results
        self.rrf_k = rrf_k
        self.weights = {
            SourceStrategy.SEMANTIC.value: semantic_weight,
            SourceStrategy.HYDE.value: hyde_weight,
            SourceStrategy.KEYWORD.value: keyword_weight,
            SourceStrategy.METADATA.value: metadata_weight,
        }
        self.hyde_enabled = hyde_enabled
        self.hyde_timeout_seconds = hyde_timeout_seconds
        self.max_keywords = max_keywords
        self._now = now

    @classmethod
    def from_config(
        cls,
        cfg: RetrievalConfig,
        vector_index: VectorIndex,
        keyword_search: Optional[KeywordSearch] = None,
        oracle: Optional[GenerationOracle] = None,
        embed_fn: Optional[EmbedFn] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> "MultiStrategyRetriever":
        return cls(
            vector_index=vector_index,
            keyword_search=keyword_search,
            oracle=oracle,
            embed_fn=embed_fn,
            max_results=cfg.max_results,
            rrf_k=cfg.rrf_k,
            semantic_weight=cfg.semantic_weight,
            hyde_weight=cfg.hyde_weight,
            keyword_weight=cfg.keyword_weight,
            metadata_weight=cfg.metadata_weight,
            hyde_enabled=cfg.hyde_enabled,
            hyde_timeout_seconds=cfg.hyde_timeout_seconds,
            max_keywords=cfg.max_keywords,
            now=now,
        )

    @traceable(name="multi_strategy_retrieve", run_type="retriever")
    async def retrieve(
        self,
        query_embedding: Optional[Sequence[float]],
        query_text: str,
        tenant: Optional[str] = None,
    ) -> FusedResultSet:
        logger.debug(f"[Retriever] Query: {query_text[:80]!r} tenant={tenant!r}")

        strategies = {
            SourceStrategy.SEMANTIC.value: self._semantic(query_embedding, tenant),
            SourceStrategy.HYDE.value: self._hyde(query_text, tenant),
            SourceStrategy.KEYWORD.value: self._keyword(query_text, tenant),
            SourceStrategy.METADATA.value: self._metadata(query_embedding, query_text, tenant),
        }
        outcomes = await asyncio.gather(
            *(self._guard(name, coro) for name, coro in strategies.items())
        )

        ranked: list[tuple[str, float, list[RetrievalHit]]] = []
        counts: dict[str, int] = {}
        failed: list[str] = []
        attempted = 0
        for name, (status, hits) in zip(strategies, outcomes):
            counts[name] = len(hits)
            if status == "skipped":
                continue
            attempted += 1
            if status == "failed":
                failed.append(name)
                continue
            ranked.append((name, self.weights[name], hits))

        if attempted and len(failed) == attempted:
            return await self._semantic_only(query_embedding, tenant, failed)

        fused = fuse(ranked, rrf_k=self.rrf_k, limit=self.max_results)
        logger.info(
            f"[Retriever] Fused {len(fused)} hits | "
            + " ".join(f"{k}={v}" for k, v in counts.items())
            + (f" | failed={failed}" if failed else "")
        )
        return FusedResultSet(hits=fused, strategy_counts=counts, failed_strategies=failed)

    async def _guard(self, name: str, coro) -> tuple[str, list[RetrievalHit]]:
        """Run one strategy; never raise."""
        try:
            return "ok", await coro
        except _Skipped:
            return "skipped", []
        except Exception as exc:
            logger.warning(f"[Retriever] {name} search failed: {exc}")
            return "failed", []

    async def _semantic_only(
        self,
        query_embedding: Optional[Sequence[float]],
        tenant: Optional[str],
        failed: list[str],
    ) -> FusedResultSet:
        logger.warning("[Retriever] All strategies failed, falling back to semantic-only search")
        try:
            _require_embedding(query_embedding)
            results = await self.vector_index.search(
                query_embedding, self.max_results, self._tenant_filter(tenant)
            )
            hits = hits_from_results(results, SourceStrategy.FALLBACK.value)
        except Exception as exc:
            logger.error(f"[Retriever] Semantic fallback failed: {exc}")
            hits = []
        fused = fuse([(SourceStrategy.FALLBACK.value, 1.0, hits)], rrf_k=self.rrf_k, limit=self.max_results)
        return FusedResultSet(
            hits=fused,
            strategy_counts={SourceStrategy.FALLBACK.value: len(hits)},
            failed_strategies=failed,
            fallback=True,
        )

    # --- Strategies -----------------------------------------------------------

    async def _semantic(self, query_embedding: Optional[Sequence[float]], tenant: Optional[str]) -> list[RetrievalHit]:
        _require_embedding(query_embedding)
        results = await self.vector_index.search(
            query_embedding, 2 * self.max_results, self._tenant_filter(tenant)
        )
        return hits_from_results(results, SourceStrategy.SEMANTIC.value)

    async def _hyde(self, query_text: str, tenant: Optional[str]) -> list[RetrievalHit]:
        if not self.hyde_enabled or self.oracle is None or self.embed_fn is None:
            raise _Skipped()
        passage = await asyncio.wait_for(
            self.oracle.generate(
                HYDE_PROMPT.format(question=query_text),
                timeout=self.hyde_timeout_seconds,
                tier="preprocessing",
            ),
            timeout=self.hyde_timeout_seconds,
        )
        if not passage or not passage.strip():
            return []
        vectors = await self.embed_fn([passage.strip()])
        results = await self.vector_index.search(
            vectors[0], self.max_results, self._tenant_filter(tenant)
        )
        return hits_from_results(results, SourceStrategy.HYDE.value)

    async def _keyword(self, query_text: str, tenant: Optional[str]) -> list[RetrievalHit]:
        keywords = extract_keywords(query_text, self.max_keywords)
        if self.keyword_search is None or not keywords:
            raise _Skipped()

        per_keyword = await asyncio.gather(
            *(self.keyword_search.search_documents(kw) for kw in keywords)
        )
        by_key: dict[str, RetrievalHit] = {}
        for raw_hits in per_keyword:
            for position, raw in enumerate(raw_hits or []):
                meta = {**(raw.get("metadata") or {})}
                meta.update({f: raw[f] for f in _KEYWORD_META_FIELDS if raw.get(f) is not None})
                if tenant is not None and meta.get("tenant") != tenant:
                    continue
                if meta.get("document_name") is not None and meta.get("chunk_index") is not None:
                    dedupe_key = f"{meta['document_name']}_{meta['chunk_index']}"
                else:
                    dedupe_key = raw.get("id") or fnv1a_64(raw.get("content", ""))
                lexical = _lexical_score(raw, position)
                if dedupe_key in by_key:
                    existing = by_key[dedupe_key]
                    existing.lexical_score = max(existing.lexical_score or 0.0, lexical)
                    continue
                by_key[dedupe_key] = RetrievalHit(
                    chunk_id=raw.get("id") or dedupe_key,
                    content=raw.get("content", ""),
                    distance=KEYWORD_DEFAULT_DISTANCE,
                    metadata=meta,
                    source_strategy=SourceStrategy.KEYWORD.value,
                    lexical_score=lexical,
                )
        hits = list(by_key.values())
        logger.debug(f"[Retriever] keywords={keywords} -> {len(hits)} unique hits")
        return hits

    async def _metadata(
        self,
        query_embedding: Optional[Sequence[float]],
        query_text: str,
        tenant: Optional[str],
    ) -> list[RetrievalHit]:
        filters = metadata_filters_for(query_text, self._now())
        if not filters:
            raise _Skipped()
        _require_embedding(query_embedding)
        filters.update(self._tenant_filter(tenant) or {})
        results = await self.vector_index.search(query_embedding, self.max_results, filters)
        return hits_from_results(results, SourceStrategy.METADATA.value)

    @staticmethod
    def _tenant_filter(tenant: Optional[str]) -> Optional[dict[str, Any]]:
        return {"tenant": tenant} if tenant is not None else None
