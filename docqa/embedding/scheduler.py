"""
Batch Embedding Scheduler
--------------------------
Splits a document's child texts into mini-batches and embeds them through
an injected async embed function, with at most `max_concurrent_batches`
embed calls in flight across ALL documents.

    submit(doc, texts, embed_fn)
        |
        v
    asyncio.Queue of BatchJobs  --->  min(C, n_batches) workers
                                        |
                                        v
                              scheduler-wide Semaphore(C)
                                        |
                                        v
                                   embed_fn(batch)

A failing batch (exception, timeout, or a result whose length differs
from the batch) is marked failed and skipped; the other batches carry on.
Setting the cancellation event stops workers from picking up new batches;
anything not yet started ends up `cancelled`.

Lifecycle events are delivered to subscribers registered with on():
  batch.queued, batch.started, batch.completed, batch.failed, batch.cancelled,
  document.started, document.completed, document.failed
"""
from __future__ import annotations

import asyncio
import inspect
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger

from docqa.config import SchedulerConfig
from docqa.interfaces import EmbedFn
from docqa.schemas import BatchJob, BatchStatus, DocumentProcessingStatus, ProcessingState

EventHandler = Callable[[str, dict[str, Any]], Any]

EVENTS = (
    "batch.queued",
    "batch.started",
    "batch.completed",
    "batch.failed",
    "batch.cancelled",
    "document.started",
    "document.completed",
    "document.failed",
)


@dataclass
class BatchRunResult:
    """Outcome of one submission: per-batch jobs plus the vectors they produced."""

    document_id: str
    jobs: list[BatchJob]
    batch_size: int
    total_texts: int
    _vectors: dict[int, list[list[float]]] = field(default_factory=dict, repr=False)

    @property
    def embeddings(self) -> list[list[float]]:
        """Successful batch outputs concatenated in batch order."""
        out: list[list[float]] = []
        for job in self.jobs:
            if job.status == BatchStatus.COMPLETED:
                out.extend(self._vectors[job.batch_index])
        return out

    def aligned(self) -> list[Optional[list[float]]]:
        """One slot per input text; None where the owning batch did not complete."""
        slots: list[Optional[list[float]]] = [None] * self.total_texts
        for job in self.jobs:
            if job.status != BatchStatus.COMPLETED:
                continue
            start = job.batch_index * self.batch_size
            for offset, vec in enumerate(self._vectors[job.batch_index]):
                slots[start + offset] = vec
        return slots

    def failed_indices(self) -> list[int]:
        """Input positions whose batch failed or was cancelled."""
        out: list[int] = []
        for job in self.jobs:
            if job.status == BatchStatus.COMPLETED:
                continue
            start = job.batch_index * self.batch_size
            out.extend(range(start, start + len(job.texts)))
        return out

    def count(self, status: BatchStatus) -> int:
        return sum(1 for j in self.jobs if j.status == status)


class BatchEmbeddingScheduler:
    """
    Worker-pool scheduler for embedding mini-batches.

    Args:
        batch_size:              Texts per embed call (default 10).
        max_concurrent_batches:  Global cap on in-flight embed calls (default 3).
        batch_timeout_seconds:   Optional per-batch timeout; a timeout fails the batch.
        status_retention_seconds: How long a finished document's status is kept.
    """

    def __init__(
        self,
        batch_size: int = 10,
        max_concurrent_batches: int = 3,
        batch_timeout_seconds: Optional[float] = None,
        status_retention_seconds: Optional[float] = 300.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be >= 1")
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.batch_timeout_seconds = batch_timeout_seconds
        self.status_retention_seconds = status_retention_seconds

        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._statuses: dict[str, DocumentProcessingStatus] = {}
        self._active_batches = 0
        self._queued_batches = 0
        self._peak_active_batches = 0

    @classmethod
    def from_config(cls, cfg: SchedulerConfig) -> "BatchEmbeddingScheduler":
        return cls(
            batch_size=cfg.batch_size,
            max_concurrent_batches=cfg.max_concurrent_batches,
            batch_timeout_seconds=cfg.batch_timeout_seconds,
            status_retention_seconds=cfg.status_retention_seconds,
        )

    def _slots(self) -> asyncio.Semaphore:
        """The scheduler-wide semaphore, rebuilt if the event loop changed (e.g. CLI runs)."""
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent_batches)
            self._semaphore_loop = loop
        return self._semaphore

    # --- Events ---------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe to an event name, or "*" for every event."""
        if event != "*" and event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for handler in [*self._handlers.get(event, []), *self._handlers.get("*", [])]:
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"[Scheduler] Event handler for {event} raised: {exc}")

    # --- Submission -----------------------------------------------------------

    async def submit(
        self,
        document_id: str,
        texts: list[str],
        embed_fn: EmbedFn,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[list[float]]:
        """Embed texts in mini-batches; returns successful outputs in batch order."""
        result = await self.run(document_id, texts, embed_fn, cancel_event=cancel_event)
        return result.embeddings

    async def run(
        self,
        document_id: str,
        texts: list[str],
        embed_fn: EmbedFn,
        cancel_event: Optional[asyncio.Event] = None,
        chunk_ids: Optional[list[str]] = None,
    ) -> BatchRunResult:
        """
        Like submit(), but returns the full BatchRunResult.

        chunk_ids (parallel to texts) lets the processing status record which
        chunks were dropped because their batch did not complete.
        """
        if not document_id:
            raise ValueError("document_id must be a non-empty string")
        if chunk_ids is not None and len(chunk_ids) != len(texts):
            raise ValueError(f"chunk_ids has {len(chunk_ids)} entries for {len(texts)} texts")

        n_batches = math.ceil(len(texts) / self.batch_size)
        jobs = [
            BatchJob(
                document_id=document_id,
                batch_id=f"batch_{document_id}_{i + 1}",
                batch_index=i,
                texts=texts[i * self.batch_size: (i + 1) * self.batch_size],
            )
            for i in range(n_batches)
        ]
        result = BatchRunResult(
            document_id=document_id,
            jobs=jobs,
            batch_size=self.batch_size,
            total_texts=len(texts),
        )

        status = DocumentProcessingStatus(
            document_id=document_id,
            total_batches=n_batches,
            batches=jobs,
        )
        self._statuses[document_id] = status

        logger.info(
            f"[Scheduler] Document {document_id!r}: {len(texts)} texts -> "
            f"{n_batches} batches (size={self.batch_size}, cap={self.max_concurrent_batches})"
        )
        await self._emit("document.started", {
            "document_id": document_id,
            "total_texts": len(texts),
            "total_batches": n_batches,
        })

        queue: asyncio.Queue[BatchJob] = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)
            self._queued_batches += 1
            await self._emit("batch.queued", self._job_payload(job))

        n_workers = min(self.max_concurrent_batches, n_batches)
        try:
            await asyncio.gather(*(
                self._worker(queue, embed_fn, result, status, cancel_event)
                for _ in range(n_workers)
            ))
        finally:
            # Whatever is still queued was never started. This also runs when
            # the caller's task is cancelled, so the status is always finalized.
            while not queue.empty():
                job = queue.get_nowait()
                self._queued_batches -= 1
                await self._cancel_job(job, status)
            await self._finish_document(status, result, chunk_ids)

        return result

    async def _worker(
        self,
        queue: asyncio.Queue[BatchJob],
        embed_fn: EmbedFn,
        result: BatchRunResult,
        status: DocumentProcessingStatus,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return
            if queue.empty():
                return

            # Take the slot before the job, so a job is never held while waiting
            async with self._slots():
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                self._queued_batches -= 1
                if cancel_event is not None and cancel_event.is_set():
                    await self._cancel_job(job, status)
                    return
                self._active_batches += 1
                self._peak_active_batches = max(self._peak_active_batches, self._active_batches)
                try:
                    await self._run_job(job, embed_fn, result, status)
                finally:
                    self._active_batches -= 1

    async def _run_job(
        self,
        job: BatchJob,
        embed_fn: EmbedFn,
        result: BatchRunResult,
        status: DocumentProcessingStatus,
    ) -> None:
        job.status = BatchStatus.PROCESSING
        job.start_time = datetime.now()
        await self._emit("batch.started", self._job_payload(job))

        try:
            call = embed_fn(job.texts)
            if self.batch_timeout_seconds is not None:
                vectors = await asyncio.wait_for(call, timeout=self.batch_timeout_seconds)
            else:
                vectors = await call
            if vectors is None or len(vectors) != len(job.texts):
                got = "None" if vectors is None else len(vectors)
                raise ValueError(f"embed_fn returned {got} vectors for {len(job.texts)} texts")
        except asyncio.CancelledError:
            job.status = BatchStatus.CANCELLED
            job.end_time = datetime.now()
            status.cancelled_batches += 1
            raise
        except Exception as exc:
            job.status = BatchStatus.FAILED
            job.end_time = datetime.now()
            job.error = str(exc) or exc.__class__.__name__
            status.failed_batches += 1
            status.errors.append(f"{job.batch_id}: {job.error}")
            logger.warning(f"[Scheduler] {job.batch_id} failed: {job.error}")
            await self._emit("batch.failed", {**self._job_payload(job), "error": job.error})
            return

        result._vectors[job.batch_index] = [list(v) for v in vectors]
        job.status = BatchStatus.COMPLETED
        job.end_time = datetime.now()
        status.completed_batches += 1
        logger.debug(f"[Scheduler] {job.batch_id} completed in {job.duration_ms:.0f}ms")
        await self._emit("batch.completed", {
            **self._job_payload(job),
            "embedding_count": len(vectors),
            "duration_ms": job.duration_ms,
        })

    async def _cancel_job(self, job: BatchJob, status: DocumentProcessingStatus) -> None:
        if job.status != BatchStatus.QUEUED:
            return
        job.status = BatchStatus.CANCELLED
        job.end_time = datetime.now()
        status.cancelled_batches += 1
        await self._emit("batch.cancelled", self._job_payload(job))

    async def _finish_document(
        self,
        status: DocumentProcessingStatus,
        result: BatchRunResult,
        chunk_ids: Optional[list[str]],
    ) -> None:
        status.end_time = datetime.now()
        if chunk_ids is not None:
            status.dropped_chunk_ids = [chunk_ids[i] for i in result.failed_indices()]
        if status.cancelled_batches:
            status.errors.append(f"cancelled: {status.cancelled_batches} batches")

        all_lost = status.total_batches > 0 and status.completed_batches == 0
        status.status = ProcessingState.FAILED if all_lost else ProcessingState.COMPLETED
        duration_ms = (status.end_time - status.start_time).total_seconds() * 1000

        payload = {
            "document_id": status.document_id,
            "total_batches": status.total_batches,
            "completed_batches": status.completed_batches,
            "failed_batches": status.failed_batches,
            "cancelled_batches": status.cancelled_batches,
            "duration_ms": duration_ms,
        }
        if status.status == ProcessingState.FAILED:
            logger.error(f"[Scheduler] Document {status.document_id!r} failed: no batch completed")
            await self._emit("document.failed", {**payload, "errors": list(status.errors)})
        else:
            logger.info(
                f"[Scheduler] Document {status.document_id!r} done | "
                f"{status.completed_batches}/{status.total_batches} batches ok | {duration_ms:.0f}ms"
            )
            await self._emit("document.completed", payload)

        self._schedule_status_cleanup(status)

    def _schedule_status_cleanup(self, status: DocumentProcessingStatus) -> None:
        if self.status_retention_seconds is None:
            return

        def _drop() -> None:
            # A newer run for the same document replaces the status object
            if self._statuses.get(status.document_id) is status:
                del self._statuses[status.document_id]

        asyncio.get_running_loop().call_later(self.status_retention_seconds, _drop)

    @staticmethod
    def _job_payload(job: BatchJob) -> dict[str, Any]:
        return {
            "document_id": job.document_id,
            "batch_id": job.batch_id,
            "batch_index": job.batch_index,
            "batch_size": len(job.texts),
            "status": job.status.value,
        }

    # --- Introspection ----------------------------------------------------------

    @property
    def active_batches(self) -> int:
        return self._active_batches

    @property
    def queued_batches(self) -> int:
        return self._queued_batches

    @property
    def saturated(self) -> bool:
        """True when every concurrency slot is busy."""
        return self._active_batches >= self.max_concurrent_batches

    def get_processing_status(self, document_id: str) -> Optional[dict[str, Any]]:
        status = self._statuses.get(document_id)
        return status.to_dict() if status else None

    def get_all_processing_statuses(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._statuses.values()]

    def get_system_metrics(self) -> dict[str, Any]:
        statuses = list(self._statuses.values())
        finished = [
            (s.end_time - s.start_time).total_seconds() * 1000
            for s in statuses
            if s.status == ProcessingState.COMPLETED and s.end_time is not None
        ]
        return {
            "total_documents": len(statuses),
            "processing": sum(1 for s in statuses if s.status == ProcessingState.PROCESSING),
            "completed": sum(1 for s in statuses if s.status == ProcessingState.COMPLETED),
            "failed": sum(1 for s in statuses if s.status == ProcessingState.FAILED),
            "active_batches": self._active_batches,
            "queued_batches": self._queued_batches,
            "peak_active_batches": self._peak_active_batches,
            "saturated": self.saturated,
            "max_concurrent_batches": self.max_concurrent_batches,
            "batch_size": self.batch_size,
            "average_processing_time_ms": round(sum(finished) / len(finished)) if finished else 0,
        }
