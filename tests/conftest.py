"""Shared fakes for the engine's collaborators (vector index, keyword search, oracle, embedder)."""
from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, Callable, Optional, Union

import pytest

from docqa.config import EngineConfig
from docqa.schemas import ChildChunk
from docqa.serving.engine import RetrievalEngine

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0)

# Toy embedding space: one dimension per vocabulary word
VOCAB = (
    "ram", "memory", "cpu", "processor", "disk", "storage", "network",
    "battery", "reset", "device", "warranty", "button", "power", "screen",
)


def embed_text(text: str) -> list[float]:
    tokens = re.findall(r"[a-z]+", text.lower())
    return [float(tokens.count(word)) for word in VOCAB]


async def fake_embed(texts: list[str]) -> list[list[float]]:
    return [embed_text(t) for t in texts]


def cosine_distance(a: list[float], b: list[float]) -> float:
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(x * x for x in b))
    if na == 0 or nb == 0:
        return 1.0
    return 1.0 - sum(x * y for x, y in zip(a, b)) / (na * nb)


def _matches(metadata: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    for key, cond in (filters or {}).items():
        value = metadata.get(key)
        if isinstance(cond, dict):
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
        elif value != cond:
            return False
    return True


class FakeVectorIndex:
    """In-memory VectorIndex; fails the first `fail_times` searches (or all, with fail=True)."""

    def __init__(self, children: Optional[list[ChildChunk]] = None, fail: bool = False, fail_times: int = 0):
        self.children: list[ChildChunk] = list(children or [])
        self.fail = fail
        self.fail_times = fail_times
        self.search_calls: list[dict[str, Any]] = []

    async def add(self, children: list[ChildChunk]) -> None:
        self.children.extend(children)

    async def search(self, embedding, k, filters=None):
        self.search_calls.append({"k": k, "filters": filters})
        if self.fail:
            raise RuntimeError("vector index unavailable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("vector index unavailable")

        rows = []
        for c in self.children:
            meta = {**c.metadata, "parent_id": c.parent_id}
            if _matches(meta, filters):
                rows.append((cosine_distance(list(embedding), c.embedding), c.id, c, meta))
        rows.sort(key=lambda r: (r[0], r[1]))
        rows = rows[:k]
        return {
            "ids": [[r[1] for r in rows]],
            "documents": [[r[2].content for r in rows]],
            "distances": [[r[0] for r in rows]],
            "metadatas": [[r[3] for r in rows]],
        }


class FakeKeywordSearch:
    """Case-insensitive substring search over a FakeVectorIndex's children."""

    def __init__(self, index: FakeVectorIndex, fail: bool = False):
        self.index = index
        self.fail = fail
        self.keywords: list[str] = []

    async def search_documents(self, keyword: str) -> list[dict[str, Any]]:
        self.keywords.append(keyword)
        if self.fail:
            raise RuntimeError("keyword search unavailable")
        return [
            {
                "id": c.id,
                "content": c.content,
                "document_name": c.metadata.get("document_name"),
                "chunk_index": c.metadata.get("chunk_index"),
                "parent_id": c.parent_id,
                "metadata": dict(c.metadata),
            }
            for c in self.index.children
            if keyword.lower() in c.content.lower()
        ]


Reply = Union[str, Exception, Callable[[str], str]]


class FakeOracle:
    """
    GenerationOracle that answers by prompt kind: rewrite, hyde, rerank, answer.

    A reply may be a string, an exception to raise, or a callable taking the prompt.
    """

    DEFAULTS = {
        "rewrite": "rewritten search query",
        "hyde": "",
        "rerank": "7",
        "answer": "Hold the reset button for ten seconds [Source 1].",
    }

    def __init__(self, **replies: Reply):
        self.replies: dict[str, Reply] = {**self.DEFAULTS, **replies}
        self.calls: list[tuple[str, str, str]] = []

    @staticmethod
    def kind_of(prompt: str) -> str:
        if prompt.startswith("Rewrite the following question"):
            return "rewrite"
        if prompt.startswith("Write a short, factual passage"):
            return "hyde"
        if prompt.startswith("Rate how relevant"):
            return "rerank"
        return "answer"

    def count(self, kind: str) -> int:
        return sum(1 for k, _, _ in self.calls if k == kind)

    async def generate(self, prompt: str, timeout=None, tier="preprocessing") -> str:
        kind = self.kind_of(prompt)
        self.calls.append((kind, tier, prompt))
        reply = self.replies[kind]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply


def make_child(
    chunk_id: str,
    content: str,
    parent_id: Optional[str] = None,
    **metadata: Any,
) -> ChildChunk:
    return ChildChunk(
        id=chunk_id,
        content=content,
        embedding=embed_text(content),
        parent_id=parent_id,
        metadata={"document_name": metadata.pop("document_name", "doc.txt"), **metadata},
    )


@pytest.fixture
def fake_index() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture
def fake_oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def engine(fake_index, fake_oracle) -> RetrievalEngine:
    return RetrievalEngine(
        vector_index=fake_index,
        embed_fn=fake_embed,
        oracle=fake_oracle,
        keyword_search=FakeKeywordSearch(fake_index),
        config=EngineConfig(),
        now=lambda: FIXED_NOW,
    )
