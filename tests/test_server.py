"""API tests: the FastAPI app around an engine built from fakes."""

import pytest
from conftest import FIXED_NOW, FakeKeywordSearch, FakeOracle, FakeVectorIndex, fake_embed
from fastapi.testclient import TestClient

from app.server import create_app
from docqa.serving.engine import RetrievalEngine

MANUAL = {
    "document_id": "manual",
    "child_texts": ["hold the reset button on the device", "the warranty covers the battery"],
    "parent_chunks": [
        {"id": "manual_p0", "content": "Hold the reset button on the device for ten seconds."},
        {"id": "manual_p1", "content": "The warranty covers the battery for two years."},
    ],
    "child_parent_ids": ["manual_p0", "manual_p1"],
    "metadata": {"document_name": "manual.txt"},
}


@pytest.fixture
def client():
    index = FakeVectorIndex()
    engine = RetrievalEngine(
        index, fake_embed, FakeOracle(), keyword_search=FakeKeywordSearch(index), now=lambda: FIXED_NOW
    )
    return TestClient(create_app(engine=engine))


class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["vectors"] == 0
        assert body["reranking_enabled"] is True


class TestIngestEndpoint:
    def test_ingest_and_status(self, client):
        resp = client.post("/api/ingest", json=MANUAL)
        assert resp.status_code == 200
        assert resp.json()["embedded"] == 2
        assert resp.json()["status"]["status"] == "completed"

        status = client.get("/api/documents/manual/status")
        assert status.status_code == 200
        assert status.json()["total_batches"] == 1

    def test_invalid_ingest(self, client):
        resp = client.post("/api/ingest", json={**MANUAL, "child_texts": []})
        assert resp.status_code == 400
        assert "child_texts" in resp.json()["detail"]

    def test_unknown_document_status(self, client):
        assert client.get("/api/documents/missing/status").status_code == 404


class TestAskEndpoint:
    def test_ask(self, client):
        client.post("/api/ingest", json=MANUAL)

        resp = client.post("/api/ask", json={"question": "How do I reset the device?"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["answer"] == FakeOracle.DEFAULTS["answer"]
        assert body["cached"] is False
        assert body["sources"][0]["chunk_id"] == "manual_p0"
        assert 0.0 < body["confidence"] <= 1.0

        again = client.post("/api/ask", json={"question": "How do I reset the device?"})
        assert again.json()["cached"] is True

    def test_blank_question(self, client):
        assert client.post("/api/ask", json={"question": "   "}).status_code == 400

    def test_missing_question(self, client):
        assert client.post("/api/ask", json={}).status_code == 422


class TestCacheEndpoints:
    def test_stats_and_clear(self, client):
        client.post("/api/ingest", json=MANUAL)
        client.post("/api/ask", json={"question": "How do I reset the device?"})

        stats = client.get("/api/cache/stats").json()
        assert stats["answer"]["size"] == 1
        assert stats["store"]["size"] == 2

        assert client.delete("/api/cache").json() == {"status": "cleared"}
        assert client.get("/api/cache/stats").json()["answer"]["size"] == 0


def test_engine_not_ready():
    client = TestClient(create_app())
    assert client.get("/api/health").status_code == 503


def test_injected_engine_survives_shutdown():
    engine = RetrievalEngine(FakeVectorIndex(), fake_embed, FakeOracle(), now=lambda: FIXED_NOW)
    app = create_app(engine=engine)

    with TestClient(app) as client:
        assert client.get("/api/health").status_code == 200

    assert app.state.engine is engine
    assert TestClient(app).get("/api/health").status_code == 200
