"""
LLM Re-ranker
--------------
Asks the Oracle (preprocessing tier) to rate every context chunk 1-10,
one call per chunk, all concurrently, each bounded by timeout_seconds.

    final = 0.7 * (llm / 10) + 0.3 * composite

The reply is free text; the first number in it is taken and clamped to
1..10. A failed, timed-out or unparsable call scores a neutral 5.
Parsed scores are stored in the RerankCache per content hash, so a chunk
already rated for (roughly) the same question is not sent again.

Disabled -> order unchanged and final = composite.
"""
from __future__ import annotations

import asyncio
import re
from typing import Optional

from langsmith import traceable
from loguru import logger

from docqa.cache.result_cache import RerankCache, content_hash
from docqa.config import RerankConfig
from docqa.generation.prompts import RERANK_PROMPT
from docqa.interfaces import GenerationOracle
from docqa.schemas import ContextChunk

NEUTRAL_SCORE = 5.0
MAX_PASSAGE_CHARS = 1500

_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def parse_llm_score(text: Optional[str]) -> Optional[float]:
    """First number in the reply clamped to [1, 10]; None if there is none."""
    if not text:
        return None
    match = _NUMBER.search(text)
    if match is None:
        return None
    return max(1.0, min(10.0, float(match.group())))


class LLMReranker:
    def __init__(
        self,
        oracle: Optional[GenerationOracle] = None,
        cache: Optional[RerankCache] = None,
        enabled: bool = True,
        timeout_seconds: float = 15.0,
        llm_weight: float = 0.7,
        composite_weight: float = 0.3,
    ) -> None:
        self.oracle = oracle
        self.cache = cache if cache is not None else RerankCache()
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        self.llm_weight = llm_weight
        self.composite_weight = composite_weight
        self.oracle_calls = 0

    @classmethod
    def from_config(
        cls,
        cfg: RerankConfig,
        oracle: Optional[GenerationOracle] = None,
        cache: Optional[RerankCache] = None,
    ) -> "LLMReranker":
        return cls(
            oracle=oracle,
            cache=cache,
            enabled=cfg.enabled,
            timeout_seconds=cfg.timeout_seconds,
            llm_weight=cfg.llm_weight,
            composite_weight=cfg.composite_weight,
        )

    @traceable(name="rerank", run_type="chain")
    async def rerank(self, chunks: list[ContextChunk], query_text: str) -> list[ContextChunk]:
        if not chunks:
            return []
        if not self.enabled or self.oracle is None:
            for c in chunks:
                c.final_score = c.composite_score
            return list(chunks)

        cached = self.cache.get_scores(query_text)
        hashes = [content_hash(c.content) for c in chunks]
        pending = [i for i, h in enumerate(hashes) if h not in cached]

        fresh = await asyncio.gather(*(self._score_one(chunks[i].content, query_text) for i in pending))
        new_scores: dict[str, float] = {}
        llm_scores: dict[int, float] = {}
        for i, parsed in zip(pending, fresh):
            if parsed is None:
                llm_scores[i] = NEUTRAL_SCORE
            else:
                llm_scores[i] = parsed
                new_scores[hashes[i]] = parsed
        if new_scores:
            self.cache.set_scores(query_text, new_scores)

        for i, chunk in enumerate(chunks):
            llm = llm_scores[i] if i in llm_scores else cached[hashes[i]]
            chunk.llm_score = llm
            chunk.final_score = self.llm_weight * (llm / 10.0) + self.composite_weight * chunk.composite_score

        ranked = sorted(chunks, key=lambda c: (-c.final_score, c.chunk_id))
        logger.info(
            f"[Reranker] {len(chunks)} chunks | {len(pending)} scored by LLM, "
            f"{len(chunks) - len(pending)} from cache | top={ranked[0].final_score:.3f}"
        )
        return ranked

    async def _score_one(self, passage: str, query_text: str) -> Optional[float]:
        prompt = RERANK_PROMPT.format(question=query_text, passage=passage[:MAX_PASSAGE_CHARS])
        self.oracle_calls += 1
        try:
            reply = await asyncio.wait_for(
                self.oracle.generate(prompt, timeout=self.timeout_seconds, tier="preprocessing"),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(f"[Reranker] Scoring call failed, using neutral score: {exc}")
            return None
        score = parse_llm_score(reply)
        if score is None:
            logger.warning(f"[Reranker] Unparsable score {reply!r:.60}, using neutral score")
        return score
