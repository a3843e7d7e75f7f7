"""
FAISS + BM25 child-chunk index
-------------------------------
Default VectorIndex / KeywordSearch collaborator.

  - faiss.IndexFlatIP over L2-normalised child embeddings
    (inner product == cosine similarity; reported distance = 1 - cosine)
  - a parallel list of ChildChunk records (same ordering as FAISS row ids)
  - a BM25Okapi keyword index (rank_bm25), rebuilt on every add()

Metadata filters are applied after an exhaustive flat search. Supported
filter values: a plain value (equality), or a dict with any of
$gte / $lte / $in / $ne.

Persistence:
  - FAISS index -> <dir>/faiss.index
  - Child chunks -> <dir>/chunks.json
  - Manifest    -> <dir>/index_manifest.json
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional, Sequence

import faiss
import numpy as np
from loguru import logger
from rank_bm25 import BM25Okapi

from docqa.embedding.embedder import normalize_rows
from docqa.interfaces import SearchResults, empty_results
from docqa.schemas import ChildChunk
from docqa.utils.helpers import load_json, save_json

INDEX_DIR = Path("data/index")
KEYWORD_TOP_K = 10


def _bm25_tokens(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace; drop 1-char tokens."""
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


def matches_filters(metadata: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, cond in filters.items():
        value = metadata.get(key)
        if isinstance(cond, dict):
            for op, target in cond.items():
                if op == "$in":
                    if value not in target:
                        return False
                elif op == "$ne":
                    if value == target:
                        return False
                elif value is None:
                    return False
                elif op == "$gte":
                    try:
                        if value < target:
                            return False
                    except TypeError:
                        return False
                elif op == "$lte":
                    try:
                        if value > target:
                            return False
                    except TypeError:
                        return False
                else:
                    raise ValueError(f"Unsupported filter operator {op!r}")
        elif value != cond:
            return False
    return True


class FAISSIndex:
    """
    Dual index over child chunks: FAISS (dense) + BM25 (sparse).

    Add embedded children via add(), then call save().
    Load a persisted index via FAISSIndex.load().
    """

    def __init__(self, dimensions: int = 1536) -> None:
        self.dimensions = dimensions
        self.faiss_index: faiss.IndexFlatIP = faiss.IndexFlatIP(dimensions)
        self.chunks: list[ChildChunk] = []
        self.bm25: BM25Okapi | None = None
        self._bm25_corpus_tokens: list[list[str]] = []

    # --- Build ----------------------------------------------------------------

    async def add(self, children: list[ChildChunk]) -> None:
        self.add_sync(children)

    def add_sync(self, children: list[ChildChunk]) -> None:
        """Append embedded children to both indexes."""
        if not children:
            return
        for child in children:
            if len(child.embedding) != self.dimensions:
                raise ValueError(
                    f"Child {child.id!r} has {len(child.embedding)}-d embedding, "
                    f"index expects {self.dimensions}"
                )

        matrix = normalize_rows(np.array([c.embedding for c in children], dtype=np.float32))
        self.faiss_index.add(np.ascontiguousarray(matrix))
        self.chunks.extend(children)

        # Include the document name so file names are always searchable
        self._bm25_corpus_tokens.extend(
            _bm25_tokens(f"{c.metadata.get('document_name', '')} {c.content}") for c in children
        )
        self.bm25 = BM25Okapi(self._bm25_corpus_tokens)

        logger.info(
            f"[FAISSIndex] +{len(children)} children | total vectors: {self.faiss_index.ntotal}"
        )

    # --- Search ---------------------------------------------------------------

    async def search(
        self,
        embedding: Sequence[float],
        k: int,
        filters: Optional[dict[str, Any]] = None,
    ) -> SearchResults:
        return self.search_sync(embedding, k, filters)

    def search_sync(
        self,
        embedding: Sequence[float],
        k: int,
        filters: Optional[dict[str, Any]] = None,
    ) -> SearchResults:
        """Nearest children by cosine distance (1 - cosine), filtered post-search."""
        total = self.faiss_index.ntotal
        if total == 0 or k <= 0:
            return empty_results()

        qv = normalize_rows(np.asarray(embedding, dtype=np.float32).reshape(1, -1))
        fetch = total if filters else min(k, total)
        scores, indices = self.faiss_index.search(np.ascontiguousarray(qv), fetch)

        results = empty_results()
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:
                continue
            chunk = self.chunks[idx]
            if not matches_filters(chunk.metadata, filters):
                continue
            results["ids"][0].append(chunk.id)
            results["documents"][0].append(chunk.content)
            results["distances"][0].append(float(1.0 - score))
            results["metadatas"][0].append({**chunk.metadata, "parent_id": chunk.parent_id})
            if len(results["ids"][0]) >= k:
                break
        return results

    async def search_documents(self, keyword: str) -> list[dict[str, Any]]:
        return self.search_keyword(keyword)

    def search_keyword(self, keyword: str, top_k: int = KEYWORD_TOP_K) -> list[dict[str, Any]]:
        """BM25 lookup; returns keyword-search hit dicts with a positive score."""
        if self.bm25 is None:
            return []
        bm25_scores = self.bm25.get_scores(_bm25_tokens(keyword))
        top_indices = np.argsort(bm25_scores)[::-1][:top_k]
        hits = []
        for i in top_indices:
            if bm25_scores[i] <= 0:
                continue
            chunk = self.chunks[i]
            hits.append({
                "id": chunk.id,
                "content": chunk.content,
                "document_name": chunk.metadata.get("document_name"),
                "chunk_index": chunk.metadata.get("chunk_index"),
                "parent_id": chunk.parent_id,
                "bm25_score": float(bm25_scores[i]),
                "metadata": dict(chunk.metadata),
            })
        return hits

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path = INDEX_DIR) -> None:
        """Persist FAISS index + child records + manifest to disk."""
        index_dir = Path(index_dir)
        index_dir.mkdir(parents=True, exist_ok=True)

        faiss.write_index(self.faiss_index, str(index_dir / "faiss.index"))
        logger.info(f"[FAISSIndex] FAISS index saved -> {index_dir}/faiss.index")

        # Embeddings live in FAISS; don't duplicate them in JSON
        save_json([c.model_dump(mode="json", exclude={"embedding"}) for c in self.chunks], index_dir / "chunks.json")
        save_json(
            {
                "total_vectors": self.faiss_index.ntotal,
                "dimensions": self.dimensions,
                "total_chunks": len(self.chunks),
                "documents": sorted({str(c.metadata.get("document_name")) for c in self.chunks}),
            },
            index_dir / "index_manifest.json",
        )
        logger.info(f"[FAISSIndex] {len(self.chunks)} child records saved -> {index_dir}/chunks.json")

    @classmethod
    def load(cls, index_dir: Path = INDEX_DIR) -> "FAISSIndex":
        """Load a persisted index from disk."""
        index_dir = Path(index_dir)
        raw_index = faiss.read_index(str(index_dir / "faiss.index"))
        instance = cls(dimensions=raw_index.d)
        instance.faiss_index = raw_index
        instance.chunks = [ChildChunk(**c) for c in load_json(index_dir / "chunks.json")]
        instance._bm25_corpus_tokens = [
            _bm25_tokens(f"{c.metadata.get('document_name', '')} {c.content}") for c in instance.chunks
        ]
        if instance._bm25_corpus_tokens:
            instance.bm25 = BM25Okapi(instance._bm25_corpus_tokens)

        logger.info(
            f"[FAISSIndex] Loaded: {instance.faiss_index.ntotal} vectors, "
            f"{len(instance.chunks)} children"
        )
        return instance

    @property
    def is_built(self) -> bool:
        return self.faiss_index.ntotal > 0
