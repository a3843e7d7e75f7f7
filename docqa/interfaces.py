"""
Collaborator interfaces.

The engine never talks to a concrete vector store or LLM SDK directly.
Anything that satisfies these protocols can be injected; the shipped
defaults live in docqa.embedding.faiss_index and docqa.generation.oracle.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Literal, Optional, Protocol, Sequence, TypedDict, runtime_checkable

from docqa.schemas import ChildChunk

Tier = Literal["preprocessing", "synthesis"]


class SearchResults(TypedDict):
    """Column-oriented results; index 0 of each outer list is the (only) query."""

    ids: list[list[str]]
    documents: list[list[str]]
    distances: list[list[float]]
    metadatas: list[list[dict[str, Any]]]


EmbedFn = Callable[[list[str]], Awaitable[list[list[float]]]]


@runtime_checkable
class VectorIndex(Protocol):
    async def search(
        self,
        embedding: Sequence[float],
        k: int,
        filters: Optional[dict[str, Any]] = None,
    ) -> SearchResults:
        """Nearest neighbours of embedding, optionally restricted by metadata filters."""
        ...

    async def add(self, children: list[ChildChunk]) -> None:
        """Index embedded child chunks."""
        ...


@runtime_checkable
class KeywordSearch(Protocol):
    async def search_documents(self, keyword: str) -> list[dict[str, Any]]:
        """
        Lexical lookup. Each hit carries content, document_name and
        chunk_index, plus optional id and metadata fields.
        """
        ...


@runtime_checkable
class GenerationOracle(Protocol):
    async def generate(
        self,
        prompt: str,
        timeout: Optional[float] = None,
        tier: Tier = "preprocessing",
    ) -> str:
        ...


def empty_results() -> SearchResults:
    return {"ids": [[]], "documents": [[]], "distances": [[]], "metadatas": [[]]}
