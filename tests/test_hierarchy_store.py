"""Unit tests for the chunk hierarchy store."""

from datetime import datetime, timedelta

import pytest

from docqa.config import StoreConfig
from docqa.schemas import ParentChunk
from docqa.store.hierarchy import ChunkHierarchyStore


def parent(pid: str, doc: str = "doc", position: int = 0, content: str = "parent text") -> ParentChunk:
    return ParentChunk(id=pid, document_id=doc, content=content, metadata={"position_in_document": position})


class TestStoreAndRead:
    def test_get_parent_tracks_access(self):
        store = ChunkHierarchyStore()
        store.store_parent(parent("p1"))

        first = store.get_parent("p1")
        second = store.get_parent("p1")
        assert first is not None and second is not None
        assert second.access_count == 2
        assert second.last_accessed is not None
        assert store.get_parent("missing") is None

        stats = store.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["size"] == 1

    def test_rejects_parent_without_id_or_content(self):
        store = ChunkHierarchyStore()
        with pytest.raises(ValueError):
            store.store_parent(parent(""))
        with pytest.raises(ValueError):
            store.store_parent(parent("p1", content=""))
        assert len(store) == 0

    def test_store_resets_bookkeeping(self):
        store = ChunkHierarchyStore()
        stale = parent("p1")
        stale.access_count = 99
        store.store_parent(stale)
        assert store.get_parent("p1").access_count == 1

    def test_document_parents_are_ordered(self):
        store = ChunkHierarchyStore()
        store.store_parents([parent("d_p2", position=2), parent("d_p0", position=0), parent("d_p1", position=1)])
        store.store_parent(parent("other_p0", doc="other"))
        assert [p.id for p in store.get_document_parents("doc")] == ["d_p0", "d_p1", "d_p2"]

    def test_delete_document(self):
        store = ChunkHierarchyStore()
        store.store_parents([parent("a"), parent("b"), parent("c", doc="other")])
        assert store.delete_document("doc") == 2
        assert store.parent_ids() == ["c"]
        assert store.stats()["documents"] == 1

    def test_contains(self):
        store = ChunkHierarchyStore()
        store.store_parent(parent("p1"))
        assert "p1" in store
        assert "p2" not in store
        assert None not in store


class TestCapacity:
    def test_overflow_evicts_least_recently_used(self):
        store = ChunkHierarchyStore(max_size=10)
        store.store_parents([parent(f"d_p{i}", position=i) for i in range(10)])
        # Pin the access time so d_p0 is unambiguously the most recent
        store.get_parent("d_p0").last_accessed = datetime.now() + timedelta(minutes=1)

        store.store_parent(parent("x_p0", doc="x"))

        assert len(store) == 8
        assert "x_p0" in store
        assert "d_p0" in store
        for evicted in ("d_p1", "d_p2", "d_p3"):
            assert evicted not in store
        assert store.stats()["total_evicted"] == 3

    def test_incoming_parents_are_never_evicted(self):
        store = ChunkHierarchyStore(max_size=3)
        store.store_parents([parent("old1"), parent("old2")])
        store.store_parents([parent("new1", doc="n"), parent("new2", doc="n"), parent("new3", doc="n")])
        assert set(store.parent_ids()) == {"new1", "new2", "new3"}

    def test_expired_parent_is_a_miss(self):
        store = ChunkHierarchyStore(max_age_seconds=-1)
        store.store_parent(parent("p1"))
        assert store.get_parent("p1") is None
        assert "p1" not in store

    def test_cleanup_drops_expired_first(self):
        store = ChunkHierarchyStore(max_size=100, max_age_seconds=-1)
        store.store_parents([parent("a"), parent("b")])
        assert store.cleanup() == 2
        assert len(store) == 0

    def test_from_config(self):
        store = ChunkHierarchyStore.from_config(StoreConfig(max_size=42, max_age_seconds=60))
        assert store.max_size == 42
        assert store.max_age_seconds == 60
