"""
Composite Scorer
-----------------
Scores each candidate on six dimensions and blends them into one number:

    semantic   1 - distance                               0.35
    keyword    exact + 0.5 * fuzzy question-word matches  0.25
    recency    age of uploaded_at                         0.15
    authority  file size / text length / version / lang   0.10
    diversity  1 - mean Jaccard vs same-document peers    0.10
    position   chunk_index / total_chunks                 0.05

Everything is a pure function of (candidates, question, now), so repeated
calls with a frozen `now` give identical results.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger

from docqa.config import ScoringWeights
from docqa.schemas import RetrievalHit, ScoredChunk
from docqa.utils.helpers import (
    clamp,
    jaccard_similarity,
    levenshtein_distance,
    parse_datetime,
    question_keywords,
    words,
)

FUZZY_MAX_DISTANCE = 2


def semantic_score(distance: float) -> float:
    return clamp(1.0 - distance)


def keyword_score(content: str, question: str) -> float:
    """
    Fraction of question keywords found in the content.

    Exact = substring match; fuzzy = within edit distance 2 of some content
    word and worth half.
    """
    keywords = question_keywords(question)
    if not keywords:
        return 0.0
    lower = content.lower()
    content_words = set(words(content))

    exact = 0
    fuzzy = 0
    for kw in keywords:
        if kw in lower:
            exact += 1
        elif any(
            abs(len(w) - len(kw)) <= FUZZY_MAX_DISTANCE
            and levenshtein_distance(kw, w) <= FUZZY_MAX_DISTANCE
            for w in content_words
        ):
            fuzzy += 1
    return min((exact + 0.5 * fuzzy) / len(keywords), 1.0)


def recency_score(metadata: dict[str, Any], now: datetime) -> float:
    uploaded = parse_datetime(metadata.get("uploaded_at"))
    if uploaded is None:
        return 0.5
    if uploaded.tzinfo is not None:
        uploaded = uploaded.astimezone().replace(tzinfo=None)
    days = (now - uploaded).total_seconds() / 86400
    if days <= 30:
        return 1.0
    if days <= 90:
        return 0.8
    if days <= 365:
        return 0.6
    return 0.3


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def authority_score(metadata: dict[str, Any], content: str = "") -> float:
    score = 0.5
    size = _as_number(metadata.get("file_size"))
    if size is not None:
        if size > 1_000_000:
            score += 0.1
        elif size > 100_000:
            score += 0.05
    text_length = _as_number(metadata.get("text_length"))
    if text_length is None:
        text_length = len(content)
    if text_length > 1000:
        score += 0.1
    version = _as_number(metadata.get("version"))
    if version is not None and version > 1:
        score += 0.05
    if metadata.get("language") == "en":
        score += 0.05
    return min(score, 1.0)


def _document_key(hit: RetrievalHit) -> Optional[str]:
    return hit.metadata.get("document_id") or hit.metadata.get("document_name")


def diversity_score(hit: RetrievalHit, candidates: list[RetrievalHit]) -> float:
    doc = _document_key(hit)
    if doc is None:
        return 1.0
    sims = [
        jaccard_similarity(hit.content, other.content)
        for other in candidates
        if other is not hit and _document_key(other) == doc
    ]
    if not sims:
        return 1.0
    return max(0.0, 1.0 - sum(sims) / len(sims))


def position_score(metadata: dict[str, Any]) -> float:
    index = _as_number(metadata.get("chunk_index"))
    total = _as_number(metadata.get("total_chunks"))
    if index is None or not total:
        return 0.5
    ratio = index / total
    if ratio <= 0.2:
        return 1.0
    if ratio <= 0.4:
        return 0.8
    if ratio <= 0.6:
        return 0.6
    return 0.4


class CompositeScorer:
    """Weighted six-dimension scorer. `now` is read once per score() call."""

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.weights = weights or ScoringWeights()
        self._now = now

    def individual_scores(
        self,
        hit: RetrievalHit,
        query_text: str,
        candidates: list[RetrievalHit],
        now: datetime,
    ) -> dict[str, float]:
        return {
            "semantic": semantic_score(hit.distance),
            "keyword": keyword_score(hit.content, query_text),
            "recency": recency_score(hit.metadata, now),
            "authority": authority_score(hit.metadata, hit.content),
            "diversity": diversity_score(hit, candidates),
            "position": position_score(hit.metadata),
        }

    def combine(self, scores: dict[str, float]) -> float:
        w = self.weights
        total = (
            scores["semantic"] * w.semantic
            + scores["keyword"] * w.keyword
            + scores["recency"] * w.recency
            + scores["authority"] * w.authority
            + scores["diversity"] * w.diversity
            + scores["position"] * w.position
        )
        return clamp(total)

    def score(
        self,
        candidates: list[RetrievalHit],
        query_text: str,
        now: Optional[datetime] = None,
    ) -> list[ScoredChunk]:
        """Score and sort candidates by final score (stable on ties)."""
        if not candidates:
            return []
        frozen_now = now or self._now()
        scored = []
        for hit in candidates:
            individual = self.individual_scores(hit, query_text, candidates, frozen_now)
            scored.append(
                ScoredChunk(
                    chunk_id=hit.chunk_id,
                    content=hit.content,
                    distance=hit.distance,
                    metadata=dict(hit.metadata),
                    individual_scores=individual,
                    final_score=self.combine(individual),
                )
            )
        scored.sort(key=lambda s: s.final_score, reverse=True)
        logger.debug(
            f"[Scorer] Scored {len(scored)} candidates | top={scored[0].final_score:.3f}"
        )
        return scored
