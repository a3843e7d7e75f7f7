"""
Query Rewriter
---------------
Produces the text that gets embedded for search.

Order of precedence:
  1. QueryRewriteCache hit
  2. Oracle rewrite (preprocessing tier), when enabled
  3. Rule-based expansion (synonyms, question type, context cues)

The result is always written back to the cache.
"""
from __future__ import annotations

import asyncio
import re
from typing import Optional

from loguru import logger

from docqa.cache.result_cache import QueryRewriteCache
from docqa.config import RewriteConfig
from docqa.generation.prompts import REWRITE_PROMPT
from docqa.interfaces import GenerationOracle

# First two entries are the ones appended
SYNONYMS: dict[str, tuple[str, ...]] = {
    # Technical terms
    "code": ("programming", "script", "function", "algorithm"),
    "data": ("information", "dataset", "records", "content"),
    "file": ("document", "resource", "asset"),
    "process": ("workflow", "procedure", "method", "approach"),
    "system": ("platform", "framework", "infrastructure"),
    "user": ("person", "individual", "customer", "client"),
    "error": ("issue", "problem", "bug", "failure"),
    "result": ("output", "outcome", "response", "answer"),
    # Question words
    "what": ("which", "describe", "explain"),
    "how": ("steps", "procedure"),
    "why": ("reason", "purpose", "cause"),
    "when": ("time", "schedule", "period"),
    "where": ("location", "place", "position"),
    # Common verbs
    "create": ("build", "develop", "implement", "generate"),
    "find": ("search", "locate", "discover", "identify"),
    "change": ("modify", "update", "alter", "transform"),
    "connect": ("link", "integrate", "join", "associate"),
    "manage": ("handle", "control", "organize", "administer"),
    # Infrastructure
    "api": ("interface", "endpoint", "service"),
    "database": ("storage", "repository"),
    "server": ("host", "machine", "instance"),
    "client": ("application", "frontend", "consumer"),
}

# (trigger phrases, expansion). A phrase in TYPE_PREFIXES also fires when the
# question starts with it.
QUESTION_TYPE_EXPANSIONS: list[tuple[tuple[str, ...], str]] = [
    (("what is",), "definition description meaning explanation"),
    (("how to", "how do"), "steps procedure process tutorial guide instructions"),
    (("why does", "why is"), "reason purpose cause explanation benefit"),
    (("when should", "when do"), "time schedule timing period duration"),
    (("where is", "where can"), "location place position address path"),
    (("error", "problem", "issue"), "troubleshooting solution fix resolution debug"),
    (("example", "sample"), "instance case scenario demonstration illustration"),
]
TYPE_PREFIXES = ("what", "how", "why", "when", "where")

CONTEXTUAL_EXPANSIONS: list[tuple[tuple[str, ...], str]] = [
    (("install", "setup"), "installation configuration deployment prerequisites requirements"),
    (("performance", "speed", "slow"), "optimization efficiency bottleneck latency"),
    (("security", "safe", "protect"), "protection authentication authorization encryption"),
    (("test", "testing"), "validation verification unit integration"),
]
SHORT_QUERY_WORDS = 3
SHORT_QUERY_BOOST = "information details overview summary guide"


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def expand_query(question: str, max_words: int = 20) -> str:
    """Rule-based expansion: synonyms, question type, context cues, then dedupe + cap."""
    lower = question.lower()
    parts = [question]

    for term, synonyms in SYNONYMS.items():
        if _has_word(lower, term):
            parts.append(" ".join(synonyms[:2]))

    for i, (phrases, expansion) in enumerate(QUESTION_TYPE_EXPANSIONS):
        starts = i < len(TYPE_PREFIXES) and lower.startswith(TYPE_PREFIXES[i])
        if starts or any(p in lower for p in phrases):
            parts.append(expansion)

    for triggers, expansion in CONTEXTUAL_EXPANSIONS:
        if any(t in lower for t in triggers):
            parts.append(expansion)

    if len(question.split()) <= SHORT_QUERY_WORDS:
        parts.append(SHORT_QUERY_BOOST)

    seen: set[str] = set()
    out: list[str] = []
    for word in " ".join(parts).split():
        key = word.lower()
        if len(word) <= 1 or key in seen:
            continue
        seen.add(key)
        out.append(word)
        if len(out) >= max_words:
            break
    return " ".join(out)


class QueryRewriter:
    """Cache-fronted rewrite of a question into search text."""

    def __init__(
        self,
        cache: Optional[QueryRewriteCache] = None,
        oracle: Optional[GenerationOracle] = None,
        llm_rewrite_enabled: bool = False,
        timeout_seconds: float = 10.0,
        max_words: int = 20,
    ) -> None:
        self.cache = cache if cache is not None else QueryRewriteCache()
        self.oracle = oracle
        self.llm_rewrite_enabled = llm_rewrite_enabled
        self.timeout_seconds = timeout_seconds
        self.max_words = max_words

    @classmethod
    def from_config(
        cls,
        cfg: RewriteConfig,
        cache: Optional[QueryRewriteCache] = None,
        oracle: Optional[GenerationOracle] = None,
    ) -> "QueryRewriter":
        return cls(
            cache=cache,
            oracle=oracle,
            llm_rewrite_enabled=cfg.llm_rewrite_enabled,
            timeout_seconds=cfg.timeout_seconds,
            max_words=cfg.max_words,
        )

    async def rewrite(self, question: str) -> str:
        cached = self.cache.get_rewrite(question)
        if cached is not None:
            logger.debug(f"[QueryRewriter] Cache hit for {question[:60]!r}")
            return cached

        rewritten: Optional[str] = None
        if self.oracle is not None and self.llm_rewrite_enabled:
            rewritten = await self._llm_rewrite(question)
        if not rewritten:
            rewritten = expand_query(question, self.max_words)

        self.cache.set_rewrite(question, rewritten)
        logger.debug(f"[QueryRewriter] {question[:60]!r} -> {rewritten[:80]!r}")
        return rewritten

    async def _llm_rewrite(self, question: str) -> Optional[str]:
        """Oracle rewrite bounded by timeout_seconds; None on any failure."""
        try:
            raw = await asyncio.wait_for(
                self.oracle.generate(
                    REWRITE_PROMPT.format(question=question),
                    timeout=self.timeout_seconds,
                    tier="preprocessing",
                ),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(f"[QueryRewriter] LLM rewrite failed, using rule-based expansion: {exc}")
            return None
        text = (raw or "").strip().splitlines()
        return text[0].strip().strip('"') if text else None
