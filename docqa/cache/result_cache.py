"""
Result caches
--------------
Three small in-memory caches that make repeated questions cheap:

  QueryRewriteCache  raw question            -> rewritten search text
  RerankCache        50-char question prefix -> {content_hash: llm_score}
  AnswerCache        normalised question     -> final answer payload

Eviction is approximate LRU by write time: once a write pushes the size
past max_size, only the newest round(0.8 * max_size) entries survive.
The whole eviction happens under the cache's lock, so the size never
exceeds max_size once set() returns. Optional ttl_seconds expires entries
on read.
"""
from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Optional

from loguru import logger

from docqa.config import CacheConfig
from docqa.schemas import CacheEntry
from docqa.utils.helpers import fnv1a_64, normalize_question

RERANK_KEY_LENGTH = 50
ANSWER_KEY_LENGTH = 100


def content_hash(text: str) -> str:
    return fnv1a_64(text)


class ResultCache:
    """Thread-safe bounded key/value cache with batch eviction."""

    name = "cache"

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._seq: dict[str, int] = {}
        self._counter = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # --- Core API -------------------------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._lookup_locked(key)
            return None if entry is None else entry.value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._put_locked(key, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            self._seq.pop(key, None)
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._seq.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "name": self.name,
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
                "ttl_seconds": self.ttl_seconds,
            }

    # --- Internals (caller holds the lock) -------------------------------------

    def _lookup_locked(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None and self.ttl_seconds is not None:
            if self._clock() - entry.timestamp > self.ttl_seconds:
                del self._entries[key]
                self._seq.pop(key, None)
                entry = None
        if entry is None:
            self._misses += 1
        else:
            self._hits += 1
        return entry

    def _put_locked(self, key: str, value: Any) -> None:
        self._counter += 1
        self._entries[key] = CacheEntry(key=key, value=value, timestamp=self._clock())
        self._seq[key] = self._counter
        if len(self._entries) > self.max_size:
            self._evict_locked()

    def _evict_locked(self) -> None:
        keep = round(0.8 * self.max_size)
        newest_first = sorted(
            self._entries.values(),
            key=lambda e: (e.timestamp, self._seq[e.key]),
            reverse=True,
        )
        survivors = newest_first[:keep]
        evicted = len(self._entries) - len(survivors)
        self._entries = {e.key: e for e in reversed(survivors)}
        self._seq = {k: self._seq[k] for k in self._entries}
        self._evictions += evicted
        logger.debug(f"[{self.__class__.__name__}] Evicted {evicted} entries (kept {len(survivors)})")


class QueryRewriteCache(ResultCache):
    """Raw question -> rewritten search text."""

    name = "query_rewrite"

    def get_rewrite(self, question: str) -> Optional[str]:
        return self.get(question)

    def set_rewrite(self, question: str, rewritten: str) -> None:
        self.set(question, rewritten)


class RerankCache(ResultCache):
    """
    Per-question map of content hash -> LLM relevance score.

    Keyed by the first 50 characters of the normalised question so
    near-identical questions share scores.
    """

    name = "rerank"

    @staticmethod
    def make_key(question: str) -> str:
        return normalize_question(question, RERANK_KEY_LENGTH)

    def get_scores(self, question: str) -> dict[str, float]:
        scores = self.get(self.make_key(question))
        return dict(scores) if scores else {}

    def get_score(self, question: str, content: str) -> Optional[float]:
        return self.get_scores(question).get(content_hash(content))

    def set_score(self, question: str, content: str, score: float) -> None:
        self.set_scores(question, {content_hash(content): score})

    def set_scores(self, question: str, scores: dict[str, float]) -> None:
        """Merge scores into the entry for this question (refreshing its timestamp)."""
        key = self.make_key(question)
        with self._lock:
            existing = self._entries.get(key)
            merged = dict(existing.value) if existing is not None else {}
            merged.update(scores)
            self._put_locked(key, merged)


class AnswerCache(ResultCache):
    """Normalised (tenant-scoped) question -> answer payload."""

    name = "answer"

    @staticmethod
    def make_key(question: str, tenant: Optional[str] = None) -> str:
        norm = normalize_question(question, ANSWER_KEY_LENGTH)
        return f"{tenant}::{norm}" if tenant else norm

    def get_answer(self, question: str, tenant: Optional[str] = None) -> Optional[dict[str, Any]]:
        """A deep copy of the stored payload with cached=True, or None."""
        payload = self.get(self.make_key(question, tenant))
        if payload is None:
            return None
        result = copy.deepcopy(payload)
        result["cached"] = True
        return result

    def set_answer(self, question: str, payload: dict[str, Any], tenant: Optional[str] = None) -> None:
        self.set(self.make_key(question, tenant), copy.deepcopy(payload))


class CacheTier:
    """The three caches as one injectable unit."""

    def __init__(
        self,
        query_rewrite: Optional[QueryRewriteCache] = None,
        rerank: Optional[RerankCache] = None,
        answer: Optional[AnswerCache] = None,
    ) -> None:
        self.query_rewrite = query_rewrite if query_rewrite is not None else QueryRewriteCache()
        self.rerank = rerank if rerank is not None else RerankCache()
        self.answer = answer if answer is not None else AnswerCache(max_size=200)

    @classmethod
    def from_config(cls, cfg: CacheConfig) -> "CacheTier":
        return cls(
            query_rewrite=QueryRewriteCache(cfg.query_rewrite_max_size, cfg.ttl_seconds),
            rerank=RerankCache(cfg.rerank_max_size, cfg.ttl_seconds),
            answer=AnswerCache(cfg.answer_max_size, cfg.ttl_seconds),
        )

    def clear(self) -> None:
        for cache in (self.query_rewrite, self.rerank, self.answer):
            cache.clear()
        logger.info("[CacheTier] All caches cleared")

    def stats(self) -> dict[str, Any]:
        return {
            "query_rewrite": self.query_rewrite.stats(),
            "rerank": self.rerank.stats(),
            "answer": self.answer.stats(),
        }
