"""Job coordinator: turns qualifying citations into a chunked batch job."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

import aiosqlite

from citekeeper.config import settings
from citekeeper.db.database import Database
from citekeeper.errors import CitationEngineError, NotFoundError
from citekeeper.jobs.queue import ChunkQueue
from citekeeper.models.citation import DEAD_STATUSES
from citekeeper.models.replacement import (
    ChunkStatus,
    JobStatus,
    ReplacementChunk,
    ReplacementJob,
    WorkItem,
)
from citekeeper.registry import collect_work_items

logger = logging.getLogger(__name__)


def partition(items: list[WorkItem], size: int) -> list[list[WorkItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class JobCoordinator:
    """Creates replacement jobs and exposes their progress.

    Starting a batch returns as soon as the job and its chunks are durable;
    processing happens in chained chunk invocations.
    """

    def __init__(
        self,
        db: Database,
        queue: ChunkQueue,
        chunk_size: int | None = None,
        stale_after_seconds: float | None = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.chunk_size = chunk_size or settings.chunk_size
        self.stale_after_seconds = (
            stale_after_seconds
            if stale_after_seconds is not None
            else settings.chunk_stale_after_seconds
        )

    async def start_batch(self, limit: int | None = None) -> str:
        articles = await self.db.list_articles(status="published")
        health = {
            record.url: record.status
            for record in await self.db.list_health(list(DEAD_STATUSES))
        }
        items = collect_work_items(articles, health, limit=limit)

        job_id = str(uuid.uuid4())
        batches = partition(items, self.chunk_size)
        job = ReplacementJob(
            id=job_id,
            status=JobStatus.RUNNING if batches else JobStatus.COMPLETED,
            total_chunks=len(batches),
            chunk_size=self.chunk_size,
            progress_total=len(items),
        )
        chunks = [
            ReplacementChunk(
                id=str(uuid.uuid4()),
                parent_job_id=job_id,
                chunk_number=number,
                items=batch,
            )
            for number, batch in enumerate(batches, start=1)
        ]

        try:
            await self.db.create_job_with_chunks(job, chunks)
        except aiosqlite.Error as exc:
            raise CitationEngineError(f"Failed to persist replacement job: {exc}", exc) from exc

        logger.info(
            "Created job %s: %d item(s) in %d chunk(s) of %d",
            job_id,
            len(items),
            len(chunks),
            self.chunk_size,
        )
        if chunks:
            self.queue.enqueue(job_id)
        return job_id

    async def get_job_status(self, job_id: str) -> dict:
        job = await self.db.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        chunks = await self.db.list_chunks(job_id)
        return {
            "job_id": job.id,
            "status": job.status.value,
            "total_chunks": job.total_chunks,
            "completed_chunks": job.completed_chunks,
            "failed_chunks": job.failed_chunks,
            "progress_current": job.progress_current,
            "progress_total": job.progress_total,
            "percentage": job.percentage,
            "auto_applied": job.auto_applied,
            "manual_review": job.manual_review,
            "failed": job.failed,
            "skipped": job.skipped,
            "error_message": job.error_message,
            "chunks": [
                {
                    "chunk_number": c.chunk_number,
                    "status": c.status.value,
                    "progress_current": c.progress_current,
                    "progress_total": c.progress_total,
                    "heartbeat_at": c.heartbeat_at,
                    "error_message": c.error_message,
                }
                for c in chunks
            ],
        }

    async def stale_chunks(self, job_id: str) -> list[ReplacementChunk]:
        """Processing chunks whose heartbeat is older than the stale threshold."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.stale_after_seconds)
        stale = []
        for chunk in await self.db.list_chunks(job_id, ChunkStatus.PROCESSING):
            beat = chunk.heartbeat_at or chunk.started_at
            if beat is None or datetime.fromisoformat(beat) < cutoff:
                stale.append(chunk)
        return stale

    async def requeue_stale_chunks(self, job_id: str) -> int:
        if await self.db.get_job(job_id) is None:
            raise NotFoundError(f"Job {job_id} not found")
        requeued = 0
        for chunk in await self.stale_chunks(job_id):
            if await self.db.requeue_chunk(
                chunk.id, f"Requeued after stale heartbeat ({chunk.heartbeat_at})"
            ):
                requeued += 1
                logger.warning(
                    "Requeued stale chunk %d of job %s", chunk.chunk_number, job_id
                )
        if requeued:
            self.queue.enqueue(job_id)
        return requeued

    async def resume_running_jobs(self) -> int:
        """Re-enqueue running jobs that still have pending chunks."""
        resumed = 0
        for job in await self.db.list_jobs(JobStatus.RUNNING):
            if await self.db.next_pending_chunk(job.id) is not None:
                self.queue.enqueue(job.id)
                resumed += 1
        if resumed:
            logger.info("Resumed %d running job(s)", resumed)
        return resumed
