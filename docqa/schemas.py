"""
Core schemas for the document QA engine.

Stored records (chunks held by the hierarchy store, batch jobs tracked by
the scheduler) are Pydantic models so they validate at the ingest boundary.
Per-query results that never leave a single request are dataclasses.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# --- Enumerations ------------------------------------------------------------

class BatchStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessingState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceStrategy(str, Enum):
    SEMANTIC = "semantic"
    HYDE = "hyde"
    KEYWORD = "keyword"
    METADATA = "metadata"
    FALLBACK = "semantic_fallback"


# --- Chunk Models -------------------------------------------------------------

class ChildChunk(BaseModel):
    """
    Small embedded unit used for vector search.

    parent_id is a non-owning reference into the hierarchy store; it may
    dangle at read time if the parent has since been evicted.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    embedding: list[float] = Field(default_factory=list)
    parent_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ParentChunk(BaseModel):
    """
    Larger unit returned to the user via a child's back-reference.

    Parents of one document form a doubly linked sequence through
    metadata.previous_chunk_id / metadata.next_chunk_id.
    """

    id: str
    document_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Bookkeeping owned by the store
    stored_at: datetime = Field(default_factory=datetime.now)
    access_count: int = 0
    last_accessed: Optional[datetime] = None

    @property
    def previous_chunk_id(self) -> Optional[str]:
        return self.metadata.get("previous_chunk_id")

    @property
    def next_chunk_id(self) -> Optional[str]:
        return self.metadata.get("next_chunk_id")

    @computed_field
    @property
    def char_count(self) -> int:
        return len(self.content)


class BatchJob(BaseModel):
    """One mini-batch of child texts sent to the embedding function."""

    document_id: str
    batch_id: str
    batch_index: int
    texts: list[str]
    status: BatchStatus = BatchStatus.QUEUED
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def summary(self) -> dict[str, Any]:
        """Status view without the raw texts."""
        return {
            "batch_id": self.batch_id,
            "batch_index": self.batch_index,
            "size": len(self.texts),
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class DocumentProcessingStatus(BaseModel):
    """Per-document view of an embedding run."""

    document_id: str
    status: ProcessingState = ProcessingState.PROCESSING
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    total_batches: int = 0
    completed_batches: int = 0
    failed_batches: int = 0
    cancelled_batches: int = 0
    batches: list[BatchJob] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    dropped_chunk_ids: list[str] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "total_batches": self.total_batches,
            "completed_batches": self.completed_batches,
            "failed_batches": self.failed_batches,
            "cancelled_batches": self.cancelled_batches,
            "batches": [b.summary() for b in self.batches],
            "errors": list(self.errors),
            "dropped_chunk_ids": list(self.dropped_chunk_ids),
        }


# --- Retrieval Results --------------------------------------------------------

@dataclass
class RetrievalHit:
    """A single candidate from one search strategy (or the fused list)."""

    chunk_id: str
    content: str
    distance: float
    metadata: dict[str, Any] = field(default_factory=dict)
    source_strategy: str = SourceStrategy.SEMANTIC.value
    score: float = 0.0                   # fused RRF score, set after fusion
    strategies: list[str] = field(default_factory=list)   # every strategy that returned it
    lexical_score: Optional[float] = None  # keyword relevance (BM25), orders keyword hits

    @property
    def parent_id(self) -> Optional[str]:
        return self.metadata.get("parent_id")


@dataclass
class FusedResultSet:
    hits: list[RetrievalHit]
    strategy_counts: dict[str, int] = field(default_factory=dict)
    failed_strategies: list[str] = field(default_factory=list)
    fallback: bool = False

    def __len__(self) -> int:
        return len(self.hits)


@dataclass
class ScoredChunk:
    chunk_id: str
    content: str
    distance: float
    metadata: dict[str, Any]
    individual_scores: dict[str, float]
    final_score: float
    llm_score: Optional[float] = None


@dataclass
class ContextChunk:
    """
    Unit handed from the expander to the re-ranker and assembler.

    is_parent is False when the expander fell back to child-level hits.
    """

    chunk_id: str
    content: str
    metadata: dict[str, Any]
    child_chunks_count: int = 1
    composite_score: float = 0.0
    final_score: float = 0.0
    llm_score: Optional[float] = None
    is_parent: bool = True


@dataclass
class ExpansionResult:
    chunks: list[ContextChunk]
    retrieval_method: str                # "hierarchical" | "mixed_fallback"
    fallback: bool = False
    parents_resolved: int = 0
    parents_missing: int = 0


@dataclass
class AssembledContext:
    context: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheEntry:
    key: str
    value: Any
    timestamp: float


@dataclass
class AnswerResult:
    """Final answer for one question, including per-stage latency in metadata."""

    question: str
    answer: str
    sources: list[dict[str, Any]]
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "sources": self.sources,
            "confidence": round(self.confidence, 4),
            "metadata": self.metadata,
            "cached": self.cached,
        }
