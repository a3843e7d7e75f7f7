"""
Hierarchical Chunker
---------------------
Turns one plain-text document into two linked levels:

  parent chunks  ~parent_max_tokens, sentence-aligned, doubly linked in
                 document order (previous_chunk_id / next_chunk_id)
  child chunks   ~child_max_tokens windows inside each parent with a
                 sentence of overlap; these are what gets embedded

Children never cross a parent boundary, so every child has exactly one
parent to expand into at query time.

Token counting defaults to tiktoken's cl100k_base encoder (the
text-embedding-3-* tokenizer) and can be swapped for any callable.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import nltk
import tiktoken
from loguru import logger

from docqa.schemas import ParentChunk
from docqa.utils.helpers import clean_text

# ── Constants ─────────────────────────────────────────────────────────────────

PARENT_MAX_TOKENS = 800
CHILD_MAX_TOKENS = 200
CHILD_OVERLAP_SENTENCES = 1

_ENC: Optional[tiktoken.Encoding] = None


def count_tokens(text: str) -> int:
    """Count BPE tokens using the cl100k_base encoder (loaded on first use)."""
    global _ENC
    if _ENC is None:
        _ENC = tiktoken.get_encoding("cl100k_base")
    return len(_ENC.encode(text))


def split_sentences(text: str) -> list[str]:
    """Split text into sentences using NLTK punkt, or a regex if punkt data is absent."""
    try:
        sentences = nltk.sent_tokenize(text)
    except LookupError:
        # Fallback: split on terminal punctuation / blank lines
        sentences = re.split(r"(?<=[.!?])\s+|\n{2,}", text)
    return [s.strip() for s in sentences if s and s.strip()]


@dataclass
class ChunkedDocument:
    """Everything RetrievalEngine.ingest() needs for one document."""

    document_id: str
    parents: list[ParentChunk]
    child_texts: list[str]
    child_parent_ids: list[str]
    child_metadata: list[dict[str, Any]] = field(default_factory=list)

    @property
    def stats(self) -> dict[str, int]:
        return {"parents": len(self.parents), "children": len(self.child_texts)}


class HierarchicalChunker:
    """
    Usage:
        chunker = HierarchicalChunker()
        doc = chunker.chunk_text("manual", text, {"document_name": "manual.txt"})
        await engine.ingest(doc.document_id, doc.child_texts, doc.parents,
                            doc.child_parent_ids, doc.child_metadata)
    """

    def __init__(
        self,
        parent_max_tokens: int = PARENT_MAX_TOKENS,
        child_max_tokens: int = CHILD_MAX_TOKENS,
        child_overlap_sentences: int = CHILD_OVERLAP_SENTENCES,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        if child_max_tokens > parent_max_tokens:
            raise ValueError("child_max_tokens must not exceed parent_max_tokens")
        self.parent_max_tokens = parent_max_tokens
        self.child_max_tokens = child_max_tokens
        self.child_overlap_sentences = child_overlap_sentences
        self.count_tokens = token_counter

    def chunk_file(self, path: str | Path, document_id: Optional[str] = None) -> ChunkedDocument:
        """Read a UTF-8 text file and chunk it with file-derived metadata."""
        p = Path(path)
        text = p.read_text(encoding="utf-8", errors="replace")
        metadata = {
            "document_name": p.name,
            "file_type": p.suffix.lstrip(".").lower() or "txt",
            "file_size": p.stat().st_size,
            "uploaded_at": datetime.now().isoformat(),
            "version": 1,
        }
        return self.chunk_text(document_id or p.stem, text, metadata)

    def chunk_text(
        self,
        document_id: str,
        text: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ChunkedDocument:
        if not document_id:
            raise ValueError("document_id must be a non-empty string")
        base = {"document_id": document_id, **(metadata or {})}
        base.setdefault("document_name", document_id)

        sentences = self._bounded_sentences(clean_text(text), self.child_max_tokens)
        parent_groups = self._pack(sentences, self.parent_max_tokens, overlap=0)

        parent_ids = [f"{document_id}_p{i}" for i in range(len(parent_groups))]
        parents: list[ParentChunk] = []
        child_texts: list[str] = []
        child_parent_ids: list[str] = []
        for i, group in enumerate(parent_groups):
            parents.append(
                ParentChunk(
                    id=parent_ids[i],
                    document_id=document_id,
                    content=" ".join(group),
                    metadata={
                        **base,
                        "previous_chunk_id": parent_ids[i - 1] if i > 0 else None,
                        "next_chunk_id": parent_ids[i + 1] if i + 1 < len(parent_ids) else None,
                        "position_in_document": i,
                        "total_chunks_in_document": len(parent_groups),
                    },
                )
            )
            for window in self._pack(group, self.child_max_tokens, overlap=self.child_overlap_sentences):
                child_texts.append(" ".join(window))
                child_parent_ids.append(parent_ids[i])

        total = len(child_texts)
        child_metadata = [
            {**base, "chunk_index": j, "total_chunks": total, "text_length": len(t)}
            for j, t in enumerate(child_texts)
        ]

        logger.debug(
            f"[Chunker] {document_id} | {len(sentences)} sentences -> "
            f"{len(parents)} parents / {total} children"
        )
        return ChunkedDocument(
            document_id=document_id,
            parents=parents,
            child_texts=child_texts,
            child_parent_ids=child_parent_ids,
            child_metadata=child_metadata,
        )

    # --- Internals ------------------------------------------------------------

    def _bounded_sentences(self, text: str, limit: int) -> list[str]:
        """Sentences, with any sentence over `limit` tokens split on word boundaries."""
        out: list[str] = []
        for sentence in split_sentences(text):
            if self.count_tokens(sentence) <= limit:
                out.append(sentence)
                continue
            piece: list[str] = []
            for word in sentence.split():
                if piece and self.count_tokens(" ".join(piece + [word])) > limit:
                    out.append(" ".join(piece))
                    piece = []
                piece.append(word)
            if piece:
                out.append(" ".join(piece))
        return out

    def _pack(self, sentences: list[str], limit: int, overlap: int) -> list[list[str]]:
        """Greedy sentence packing; consecutive windows share `overlap` sentences."""
        windows: list[list[str]] = []
        current: list[str] = []
        carried = 0
        for sentence in sentences:
            if len(current) > carried and self.count_tokens(" ".join(current + [sentence])) > limit:
                windows.append(current)
                current = current[-overlap:] if overlap else []
                # Drop the carried overlap if it alone leaves no room
                if current and self.count_tokens(" ".join(current + [sentence])) > limit:
                    current = []
                carried = len(current)
            current.append(sentence)
        if len(current) > carried or (current and not windows):
            windows.append(current)
        return windows
