"""
Document QA - Web API Server
-----------------------------
FastAPI server that wraps the RetrievalEngine.

Endpoints:
  GET  /api/health                  -> engine status, vector count, models
  POST /api/ingest                  -> store parents + embed child chunks
  POST /api/ask                     -> answer a question over ingested docs
  GET  /api/documents/{id}/status   -> batch processing status of a document
  GET  /api/cache/stats             -> cache tier, store and scheduler stats
  DELETE /api/cache                 -> clear the rewrite / rerank / answer caches

Run from the project root:
    uvicorn app.server:app --reload --port 8000

The engine loads data/index/ relative to CWD when a saved index exists.
"""
from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

# Windows cp1252 terminal fix
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field, field_validator

load_dotenv()

CONFIG_PATH = "config/config.yaml"


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    document_id: str
    child_texts: list[str]
    parent_chunks: list[dict[str, Any]] = Field(default_factory=list)
    child_parent_ids: Optional[list[Optional[str]]] = None
    metadata: Optional[dict[str, Any] | list[dict[str, Any]]] = None


class IngestResponse(BaseModel):
    document_id: str
    embedded: int
    status: Optional[dict[str, Any]] = None


class AskRequest(BaseModel):
    question: str
    tenant: Optional[str] = None

    @field_validator("question")
    @classmethod
    def strip_question(cls, v: str) -> str:
        return v.strip()


class SourceModel(BaseModel):
    index: int
    chunk_id: str
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    score: float
    llm_score: Optional[float] = None
    child_chunks_count: int
    excerpt: str


class AskResponse(BaseModel):
    question: str
    answer: str
    sources: list[SourceModel]
    confidence: float
    cached: bool
    metadata: dict[str, Any]


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(engine=None) -> FastAPI:
    """
    Build the API around an engine.

    When no engine is passed, the default one (FAISS + OpenAI embeddings +
    LLM Oracle) is built once at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # An injected engine belongs to the caller and outlives the app
        built = app.state.engine is None
        if built:
            from docqa.config import load_config
            from docqa.serving.engine import build_default_engine
            from docqa.utils.logger import setup_logger

            cfg = load_config(CONFIG_PATH)
            setup_logger(log_level=cfg.logging.level, log_file=cfg.logging.file)
            logger.info("[Server] Loading retrieval engine...")
            app.state.engine, app.state.index = build_default_engine(cfg, index_dir=cfg.embedding.index_dir)
            logger.info(f"[Server] Engine ready | {_vector_count(app):,} vectors")
        yield
        if built:
            app.state.engine = None
            app.state.index = None
            logger.info("[Server] Engine unloaded.")

    app = FastAPI(
        title="Document QA API",
        description="Hybrid retrieval & re-ranking over ingested documents",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.index = getattr(engine, "vector_index", None)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health(request: Request):
        """Return engine status, index size and model settings."""
        eng = _engine(request)
        cfg = eng.config
        return {
            "status": "ok",
            "vectors": _vector_count(request.app),
            "preprocessing_model": cfg.generation.preprocessing_model,
            "synthesis_model": cfg.generation.synthesis_model,
            "hyde_enabled": cfg.retrieval.hyde_enabled,
            "reranking_enabled": cfg.rerank.enabled,
            "max_results": cfg.retrieval.max_results,
        }

    @app.post("/api/ingest", response_model=IngestResponse)
    async def ingest(body: IngestRequest, request: Request):
        eng = _engine(request)
        logger.info(
            f"[API] Ingest | document={body.document_id!r} "
            f"children={len(body.child_texts)} parents={len(body.parent_chunks)}"
        )
        try:
            embeddings = await eng.ingest(
                body.document_id,
                body.child_texts,
                body.parent_chunks,
                child_parent_ids=body.child_parent_ids,
                metadata=body.metadata,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return IngestResponse(
            document_id=body.document_id,
            embedded=len(embeddings),
            status=eng.get_processing_status(body.document_id),
        )

    @app.post("/api/ask", response_model=AskResponse)
    async def ask(body: AskRequest, request: Request):
        """Run the full retrieval + generation pipeline for a question."""
        eng = _engine(request)
        if not body.question:
            raise HTTPException(status_code=400, detail="Question cannot be empty")

        logger.info(f"[API] Ask | tenant={body.tenant!r} | query={body.question[:80]!r}")
        try:
            result = await eng.answer(body.question, tenant=body.tenant)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return AskResponse(**result.to_dict())

    @app.get("/api/documents/{document_id}/status")
    async def document_status(document_id: str, request: Request):
        status = _engine(request).get_processing_status(document_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"No processing status for {document_id!r}")
        return status

    @app.get("/api/cache/stats")
    async def cache_stats(request: Request):
        return _engine(request).get_cache_stats()

    @app.delete("/api/cache")
    async def clear_cache(request: Request):
        _engine(request).clear_caches()
        return {"status": "cleared"}

    return app


def _engine(request: Request):
    engine = request.app.state.engine
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready")
    return engine


def _vector_count(app: FastAPI) -> int:
    index = getattr(app.state, "index", None)
    faiss_index = getattr(index, "faiss_index", None)
    return int(faiss_index.ntotal) if faiss_index is not None else 0


app = create_app()
