"""
Chunk Hierarchy Store
----------------------
In-memory home for parent chunks. Child chunks live in the vector index
and point back here through parent_id; the expander and the narrative
assembler resolve those references at query time.

Capacity policy (checked synchronously before every write, so a write
never fails for lack of room):
  1. drop entries older than max_age_seconds
  2. if still above target (cleanup_target_ratio * max_size), drop the
     least-recently-used entries (last access, else store time)
Parents being written in the same call are never evicted by that call.

Entries older than max_age_seconds are also treated as misses on read.
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Iterable, Optional

from loguru import logger

from docqa.config import StoreConfig
from docqa.schemas import ParentChunk


class ChunkHierarchyStore:
    """Bounded parent-chunk store with per-document lookup."""

    def __init__(
        self,
        max_size: int = 10_000,
        max_age_seconds: float = 24 * 60 * 60,
        cleanup_target_ratio: float = 0.8,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.max_age_seconds = max_age_seconds
        self.cleanup_target_ratio = cleanup_target_ratio

        self._parents: dict[str, ParentChunk] = {}
        self._by_document: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        self._stats = {
            "total_stored": 0,
            "total_retrieved": 0,
            "total_deleted": 0,
            "total_evicted": 0,
            "hits": 0,
            "misses": 0,
            "last_cleanup": None,
            "created_at": datetime.now(),
        }

    @classmethod
    def from_config(cls, cfg: StoreConfig) -> "ChunkHierarchyStore":
        return cls(
            max_size=cfg.max_size,
            max_age_seconds=cfg.max_age_seconds,
            cleanup_target_ratio=cfg.cleanup_target_ratio,
        )

    # --- Writes ---------------------------------------------------------------

    def store_parent(self, parent: ParentChunk) -> None:
        self.store_parents([parent])

    def store_parents(self, parents: Iterable[ParentChunk]) -> int:
        """
        Store (or overwrite) a group of parents. Returns the number stored.

        Raises ValueError for a parent without id or content.
        """
        parents = list(parents)
        for p in parents:
            if not p.id:
                raise ValueError("Parent chunk id must be a non-empty string")
            if not p.content:
                raise ValueError(f"Parent chunk {p.id!r} has no content")

        incoming = {p.id for p in parents}
        with self._lock:
            new_ids = incoming - self._parents.keys()
            if len(self._parents) + len(new_ids) > self.max_size:
                self._cleanup_locked(protected=incoming, incoming=len(new_ids))

            now = datetime.now()
            for p in parents:
                old = self._parents.get(p.id)
                if old is not None and old.document_id != p.document_id:
                    self._by_document.get(old.document_id, set()).discard(p.id)
                stored = p.model_copy(update={"stored_at": now, "access_count": 0, "last_accessed": None})
                self._parents[p.id] = stored
                self._by_document.setdefault(p.document_id, set()).add(p.id)
                self._stats["total_stored"] += 1

        logger.debug(f"[HierarchyStore] Stored {len(parents)} parent chunks (size={len(self._parents)})")
        return len(parents)

    def delete_parent(self, parent_id: str) -> bool:
        with self._lock:
            return self._delete_locked(parent_id)

    def delete_document(self, document_id: str) -> int:
        """Remove every parent of a document. Returns the number removed."""
        with self._lock:
            ids = list(self._by_document.get(document_id, ()))
            for pid in ids:
                self._delete_locked(pid)
        if ids:
            logger.info(f"[HierarchyStore] Deleted {len(ids)} parents of document {document_id!r}")
        return len(ids)

    def clear(self) -> int:
        with self._lock:
            count = len(self._parents)
            self._parents.clear()
            self._by_document.clear()
        logger.info(f"[HierarchyStore] Cleared {count} parent chunks")
        return count

    # --- Reads ----------------------------------------------------------------

    def get_parent(self, parent_id: Optional[str]) -> Optional[ParentChunk]:
        """Resolve a parent id, updating access statistics. None on miss or expiry."""
        if not parent_id:
            return None
        with self._lock:
            parent = self._parents.get(parent_id)
            if parent is not None and self._is_expired(parent, datetime.now()):
                self._delete_locked(parent_id, evicted=True)
                parent = None
            if parent is None:
                self._stats["misses"] += 1
                return None
            parent.access_count += 1
            parent.last_accessed = datetime.now()
            self._stats["hits"] += 1
            self._stats["total_retrieved"] += 1
            return parent

    def has_parent(self, parent_id: Optional[str]) -> bool:
        if not parent_id:
            return False
        with self._lock:
            return parent_id in self._parents

    def get_document_parents(self, document_id: str) -> list[ParentChunk]:
        """Parents of one document ordered by position_in_document."""
        with self._lock:
            parents = [self._parents[pid] for pid in self._by_document.get(document_id, ())]
        return sorted(parents, key=lambda p: (p.metadata.get("position_in_document", 0), p.id))

    def parent_ids(self) -> list[str]:
        with self._lock:
            return list(self._parents.keys())

    def __len__(self) -> int:
        return len(self._parents)

    def __contains__(self, parent_id: object) -> bool:
        return isinstance(parent_id, str) and self.has_parent(parent_id)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            size = len(self._parents)
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **{k: v for k, v in self._stats.items() if k not in ("created_at", "last_cleanup")},
                "size": size,
                "max_size": self.max_size,
                "documents": len(self._by_document),
                "utilization_percent": round(size / self.max_size * 100),
                "hit_rate": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
                "last_cleanup": self._stats["last_cleanup"].isoformat() if self._stats["last_cleanup"] else None,
                "uptime_seconds": round((datetime.now() - self._stats["created_at"]).total_seconds(), 1),
            }

    # --- Eviction ---------------------------------------------------------------

    def cleanup(self) -> int:
        """Run the capacity policy now. Returns the number of parents evicted."""
        with self._lock:
            return self._cleanup_locked(protected=set(), incoming=0)

    def _cleanup_locked(self, protected: set[str], incoming: int) -> int:
        now = datetime.now()
        target = max(0, int(self.max_size * self.cleanup_target_ratio) - incoming)

        doomed = [
            pid for pid, p in self._parents.items()
            if pid not in protected and self._is_expired(p, now)
        ]
        remaining = len(self._parents) - len(doomed)
        if remaining > target:
            doomed_set = set(doomed)
            lru = sorted(
                (p for pid, p in self._parents.items() if pid not in protected and pid not in doomed_set),
                key=lambda p: (p.last_accessed or p.stored_at, p.id),
            )
            doomed.extend(p.id for p in lru[: remaining - target])

        for pid in doomed:
            self._delete_locked(pid, evicted=True)
        self._stats["last_cleanup"] = now

        logger.info(
            f"[HierarchyStore] Cleanup evicted {len(doomed)} parents "
            f"(remaining={len(self._parents)}, target={target})"
        )
        return len(doomed)

    def _is_expired(self, parent: ParentChunk, now: datetime) -> bool:
        return (now - parent.stored_at).total_seconds() > self.max_age_seconds

    def _delete_locked(self, parent_id: str, evicted: bool = False) -> bool:
        parent = self._parents.pop(parent_id, None)
        if parent is None:
            return False
        ids = self._by_document.get(parent.document_id)
        if ids is not None:
            ids.discard(parent_id)
            if not ids:
                del self._by_document[parent.document_id]
        self._stats["total_evicted" if evicted else "total_deleted"] += 1
        return True
