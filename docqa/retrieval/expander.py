"""
Hierarchical Expander
----------------------
Turns scored child hits into the larger parent chunks they point at.

Children are grouped by parent_id; each resolved parent becomes one
ContextChunk whose child_chunks_count is the number of children that
voted for it and whose composite score is its best child's score.
Children whose parent cannot be resolved are kept at child level.

If no parent resolves at all, the expander returns the fused child hits
under the lenient distance threshold instead (retrieval_method
"mixed_fallback").
"""
from __future__ import annotations

from typing import Optional

from loguru import logger

from docqa.retrieval.scorer import CompositeScorer, semantic_score
from docqa.schemas import ContextChunk, ExpansionResult, RetrievalHit, ScoredChunk
from docqa.store.hierarchy import ChunkHierarchyStore

HIERARCHICAL = "hierarchical"
MIXED_FALLBACK = "mixed_fallback"


def _child_context(chunk: ScoredChunk) -> ContextChunk:
    return ContextChunk(
        chunk_id=chunk.chunk_id,
        content=chunk.content,
        metadata=dict(chunk.metadata),
        child_chunks_count=1,
        composite_score=chunk.final_score,
        final_score=chunk.final_score,
        is_parent=False,
    )


class HierarchicalExpander:
    def __init__(
        self,
        store: ChunkHierarchyStore,
        scorer: Optional[CompositeScorer] = None,
        fallback_distance_threshold: float = 5.0,
    ) -> None:
        self.store = store
        self.scorer = scorer
        self.fallback_distance_threshold = fallback_distance_threshold

    def expand(
        self,
        child_hits: list[ScoredChunk],
        query_text: str = "",
        raw_hits: Optional[list[RetrievalHit]] = None,
    ) -> ExpansionResult:
        """
        Args:
            child_hits: Scored hits that passed the normal relevance threshold.
            query_text: Question text, used to score fallback hits.
            raw_hits:   Unfiltered fused hits for the lenient fallback. When
                        omitted the fallback draws from child_hits.
        """
        groups: dict[str, list[ScoredChunk]] = {}
        orphans: list[ScoredChunk] = []
        for hit in child_hits:
            parent_id = hit.metadata.get("parent_id")
            if parent_id:
                groups.setdefault(parent_id, []).append(hit)
            else:
                orphans.append(hit)

        expanded: list[ContextChunk] = []
        missing = 0
        for parent_id, children in groups.items():
            parent = self.store.get_parent(parent_id)
            if parent is None:
                missing += 1
                orphans.extend(children)
                continue
            best = max(children, key=lambda c: c.final_score)
            expanded.append(
                ContextChunk(
                    chunk_id=parent.id,
                    content=parent.content,
                    metadata={
                        **best.metadata,
                        **parent.metadata,
                        "document_id": parent.document_id,
                        "parent_id": parent.id,
                        "child_chunk_ids": [c.chunk_id for c in children],
                    },
                    child_chunks_count=len(children),
                    composite_score=best.final_score,
                    final_score=best.final_score,
                    is_parent=True,
                )
            )

        if not expanded:
            if missing:
                logger.warning(f"[Expander] {missing} parent ids unresolved, using child-level fallback")
            return self._fallback(child_hits, query_text, raw_hits, missing)

        expanded.extend(_child_context(c) for c in orphans)
        expanded.sort(key=lambda c: (-c.child_chunks_count, -c.composite_score, c.chunk_id))
        logger.info(
            f"[Expander] {len(child_hits)} children -> {len(expanded)} context chunks "
            f"({len(groups) - missing} parents, {len(orphans)} child-level)"
        )
        return ExpansionResult(
            chunks=expanded,
            retrieval_method=HIERARCHICAL,
            fallback=False,
            parents_resolved=len(groups) - missing,
            parents_missing=missing,
        )

    def _fallback(
        self,
        child_hits: list[ScoredChunk],
        query_text: str,
        raw_hits: Optional[list[RetrievalHit]],
        missing: int,
    ) -> ExpansionResult:
        limit = self.fallback_distance_threshold
        if raw_hits is None:
            chunks = [_child_context(c) for c in child_hits if c.distance <= limit]
        else:
            lenient = [h for h in raw_hits if h.distance <= limit]
            if self.scorer is not None:
                chunks = [_child_context(c) for c in self.scorer.score(lenient, query_text)]
            else:
                chunks = [
                    _child_context(
                        ScoredChunk(
                            chunk_id=h.chunk_id,
                            content=h.content,
                            distance=h.distance,
                            metadata=dict(h.metadata),
                            individual_scores={"semantic": semantic_score(h.distance)},
                            final_score=semantic_score(h.distance),
                        )
                    )
                    for h in lenient
                ]
        return ExpansionResult(
            chunks=chunks,
            retrieval_method=MIXED_FALLBACK,
            fallback=True,
            parents_resolved=0,
            parents_missing=missing,
        )
