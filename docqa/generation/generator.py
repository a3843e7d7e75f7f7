"""
Answer Synthesizer
-------------------
Builds the grounded prompt from ranked context chunks and asks the Oracle's
synthesis tier for the answer.

Context layout:
  [Source 1 (from: name)]   narrative window around the top chunk
  [Source 2 (from: name)]   remaining chunks in rank order
  ...
capped by max_context_chunks and max_context_chars.

If the Oracle fails, the answer is a plain excerpt of the top chunk and
the result is flagged generation_fallback.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from langsmith import traceable
from loguru import logger

from docqa.config import GenerationConfig
from docqa.generation.prompts import (
    ANSWER_PROMPT,
    GENERATION_FALLBACK_PREFIX,
    NO_CONTEXT_RESPONSE,
    SOURCE_HEADER,
    SYSTEM_PROMPT,
)
from docqa.interfaces import GenerationOracle
from docqa.retrieval.assembler import NarrativeAssembler
from docqa.schemas import ContextChunk
from docqa.utils.helpers import truncate_text

FALLBACK_EXCERPT_CHARS = 300
EXCERPT_CHARS = 200

_ROLE_PREFIX = re.compile(r"^\s*(assistant|ai|answer|response)\s*:\s*", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def clean_response(text: str) -> str:
    """Strip a leading role label and collapse runs of blank lines."""
    text = _ROLE_PREFIX.sub("", text.strip(), count=1)
    return _BLANK_RUNS.sub("\n\n", text).strip()


def source_name(chunk: ContextChunk) -> str:
    meta = chunk.metadata
    return str(meta.get("document_name") or meta.get("document_id") or chunk.chunk_id)


def build_sources(chunks: list[ContextChunk]) -> list[dict[str, Any]]:
    """One citation dict per context chunk, numbered from 1."""
    return [
        {
            "index": i,
            "chunk_id": c.chunk_id,
            "document_id": c.metadata.get("document_id"),
            "document_name": c.metadata.get("document_name"),
            "score": round(c.final_score, 4),
            "llm_score": c.llm_score,
            "child_chunks_count": c.child_chunks_count,
            "excerpt": truncate_text(c.content, EXCERPT_CHARS),
        }
        for i, c in enumerate(chunks, start=1)
    ]


@dataclass
class SynthesisResult:
    answer: str
    sources: list[dict[str, Any]]
    context_chunks: list[ContextChunk]
    generation_fallback: bool = False
    narrative: dict[str, Any] = field(default_factory=dict)
    context_chars: int = 0


class AnswerSynthesizer:
    def __init__(
        self,
        oracle: Optional[GenerationOracle],
        assembler: Optional[NarrativeAssembler] = None,
        max_context_chars: int = 6000,
        max_context_chunks: int = 8,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.oracle = oracle
        self.assembler = assembler
        self.max_context_chars = max_context_chars
        self.max_context_chunks = max_context_chunks
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(
        cls,
        cfg: GenerationConfig,
        oracle: Optional[GenerationOracle],
        assembler: Optional[NarrativeAssembler] = None,
    ) -> "AnswerSynthesizer":
        return cls(
            oracle=oracle,
            assembler=assembler,
            max_context_chars=cfg.max_context_chars,
            max_context_chunks=cfg.max_context_chunks,
            timeout_seconds=cfg.synthesis_timeout_seconds,
        )

    def build_context(self, chunks: list[ContextChunk]) -> tuple[str, list[ContextChunk], dict[str, Any]]:
        """
        Number and join context chunks within the char budget.

        Returns (context_string, chunks_used, narrative_metadata). The first
        chunk is always included (truncated if it alone exceeds the budget).
        """
        parts: list[str] = []
        used: list[ContextChunk] = []
        narrative: dict[str, Any] = {}
        total = 0

        for i, chunk in enumerate(chunks[: self.max_context_chunks], start=1):
            body = chunk.content
            if i == 1 and self.assembler is not None:
                assembled = self.assembler.assemble(chunk)
                body = assembled.context
                narrative = assembled.metadata
            block = f"{SOURCE_HEADER.format(index=i, name=source_name(chunk))}\n{body}"
            if i == 1 and len(block) > self.max_context_chars:
                block = block[: self.max_context_chars]
            elif total + len(block) > self.max_context_chars:
                break
            parts.append(block)
            used.append(chunk)
            total += len(block) + 2

        return "\n\n".join(parts), used, narrative

    @traceable(name="synthesize_answer", run_type="chain")
    async def synthesize(self, question: str, chunks: list[ContextChunk]) -> SynthesisResult:
        if not chunks:
            return SynthesisResult(answer=NO_CONTEXT_RESPONSE, sources=[], context_chunks=[])

        context, used, narrative = self.build_context(chunks)
        prompt = ANSWER_PROMPT.format(system_prompt=SYSTEM_PROMPT, question=question, context=context)
        logger.debug(f"[Synthesizer] {len(used)} chunks | {len(context)} context chars | q={question[:60]!r}")

        answer: Optional[str] = None
        if self.oracle is not None:
            try:
                raw = await asyncio.wait_for(
                    self.oracle.generate(prompt, timeout=self.timeout_seconds, tier="synthesis"),
                    timeout=self.timeout_seconds,
                )
                answer = clean_response(raw or "")
            except Exception as exc:
                logger.warning(f"[Synthesizer] Generation failed, returning raw excerpt: {exc}")

        if not answer:
            excerpt = chunks[0].content[:FALLBACK_EXCERPT_CHARS]
            return SynthesisResult(
                answer=GENERATION_FALLBACK_PREFIX + excerpt,
                sources=build_sources(used),
                context_chunks=used,
                generation_fallback=True,
                narrative=narrative,
                context_chars=len(context),
            )

        return SynthesisResult(
            answer=answer,
            sources=build_sources(used),
            context_chunks=used,
            narrative=narrative,
            context_chars=len(context),
        )
