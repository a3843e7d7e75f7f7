"""
Engine configuration
---------------------
Typed view over config/config.yaml.

Each pipeline stage owns a small pydantic section so components can be
constructed from their own slice of the config:

    cfg = load_config("config/config.yaml")
    scheduler = BatchEmbeddingScheduler.from_config(cfg.scheduler)

Unknown keys are ignored; missing keys fall back to the defaults below.
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, model_validator


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/docqa.log"


class SchedulerConfig(BaseModel):
    batch_size: int = Field(default=10, ge=1)
    max_concurrent_batches: int = Field(default=3, ge=1)
    batch_timeout_seconds: Optional[float] = None
    status_retention_seconds: float = 300.0


class StoreConfig(BaseModel):
    max_size: int = Field(default=10_000, ge=1)
    max_age_seconds: float = 24 * 60 * 60
    cleanup_target_ratio: float = Field(default=0.8, gt=0.0, le=1.0)


class RetrievalConfig(BaseModel):
    max_results: int = Field(default=5, ge=1)
    rrf_k: int = 60
    semantic_weight: float = 0.4
    hyde_weight: float = 0.3
    keyword_weight: float = 0.2
    metadata_weight: float = 0.1
    hyde_enabled: bool = True
    hyde_timeout_seconds: float = 15.0
    max_keywords: int = 3
    relevance_distance_threshold: float = 2.0


class RewriteConfig(BaseModel):
    llm_rewrite_enabled: bool = False
    timeout_seconds: float = 10.0
    max_words: int = 20


class ScoringWeights(BaseModel):
    semantic: float = 0.35
    keyword: float = 0.25
    recency: float = 0.15
    authority: float = 0.10
    diversity: float = 0.10
    position: float = 0.05

    @model_validator(mode="after")
    def _check_sum(self) -> "ScoringWeights":
        total = sum(self.model_dump().values())
        if abs(total - 1.0) > 1e-6:
            logger.warning(f"[Config] Scoring weights sum to {total:.3f}, not 1.0")
        return self


class ExpansionConfig(BaseModel):
    fallback_distance_threshold: float = 5.0


class RerankConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: float = 15.0
    llm_weight: float = 0.7
    composite_weight: float = 0.3


class AssemblyConfig(BaseModel):
    enabled: bool = True


class CacheConfig(BaseModel):
    query_rewrite_max_size: int = Field(default=500, ge=1)
    rerank_max_size: int = Field(default=500, ge=1)
    answer_max_size: int = Field(default=200, ge=1)
    ttl_seconds: Optional[float] = None


class GenerationConfig(BaseModel):
    provider: Literal["openai", "anthropic"] = "openai"
    preprocessing_model: str = "gpt-4o-mini"
    synthesis_model: str = "gpt-4o"
    temperature: float = 0.3
    max_tokens: int = 1024
    synthesis_timeout_seconds: float = 30.0
    max_context_chars: int = 6000
    max_context_chunks: int = 8


class EmbeddingConfig(BaseModel):
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    index_dir: str = "data/index"


class EngineConfig(BaseModel):
    """Root configuration object. Every section has working defaults."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    rewrite: RewriteConfig = Field(default_factory=RewriteConfig)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    expansion: ExpansionConfig = Field(default_factory=ExpansionConfig)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
    assembly: AssemblyConfig = Field(default_factory=AssemblyConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


def load_config(path: str | Path = "config/config.yaml") -> EngineConfig:
    """
    Load and validate the YAML config.

    A missing file is not an error: the engine runs on defaults and logs
    a warning so the operator knows which values are in effect.
    """
    p = Path(path)
    if not p.exists():
        logger.warning(f"[Config] {p} not found, using built-in defaults")
        return EngineConfig()

    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    # "project" is informational only
    raw.pop("project", None)
    cfg = EngineConfig(**raw)
    logger.debug(f"[Config] Loaded {p}")
    return cfg
