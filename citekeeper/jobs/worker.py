"""Chunk worker: processes one chunk per invocation, then chains the next."""

from __future__ import annotations

import asyncio
import logging
import uuid

from citekeeper.config import settings
from citekeeper.db.database import Database
from citekeeper.discovery.discoverer import ReplacementDiscoverer
from citekeeper.errors import ApplicationError, ChunkFatalError
from citekeeper.gate import ConfidenceGate
from citekeeper.jobs.queue import ChunkQueue
from citekeeper.models.replacement import (
    ChunkStatus,
    JobStatus,
    ReplacementChunk,
    SuggestionStatus,
    WorkItem,
)
from citekeeper.patcher.patcher import ContentPatcher

logger = logging.getLogger(__name__)

OUTCOMES = ("auto_applied", "manual_review", "failed", "skipped")


class ChunkWorker:
    """Runs discovery, gating and patching for the items of a chunk.

    Items run strictly one after another. Each invocation claims a single
    pending chunk under a fresh token; if the chunk is requeued meanwhile,
    the token no longer matches and the remaining writes are dropped.
    """

    def __init__(
        self,
        db: Database,
        discoverer: ReplacementDiscoverer,
        gate: ConfidenceGate,
        patcher: ContentPatcher,
        queue: ChunkQueue,
        heartbeat_interval: float | None = None,
    ) -> None:
        self.db = db
        self.discoverer = discoverer
        self.gate = gate
        self.patcher = patcher
        self.queue = queue
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.heartbeat_interval_seconds
        )

    async def run(self, job_id: str) -> None:
        job = await self.db.get_job(job_id)
        if job is None:
            logger.warning("Chunk invocation for unknown job %s", job_id)
            return
        if job.status is not JobStatus.RUNNING:
            logger.debug("Job %s is %s; nothing to do", job_id, job.status.value)
            return

        chunk = await self.db.next_pending_chunk(job_id)
        if chunk is None:
            await self.finalize(job_id)
            return

        token = str(uuid.uuid4())
        if not await self.db.claim_chunk(chunk.id, token):
            logger.info("Chunk %d of job %s claimed elsewhere", chunk.chunk_number, job_id)
            return

        logger.info(
            "Processing chunk %d/%d of job %s (%d items)",
            chunk.chunk_number,
            job.total_chunks,
            job_id,
            len(chunk.items),
        )
        try:
            held = await self._process(chunk, token)
        except Exception as exc:
            fatal = ChunkFatalError(
                f"Chunk {chunk.chunk_number} failed: {exc}", chunk.id, exc
            )
            logger.exception("Chunk %d of job %s failed", chunk.chunk_number, job_id)
            held = await self.db.finish_chunk(
                chunk.id, token, ChunkStatus.FAILED, fatal.message
            )
        else:
            if held:
                held = await self.db.finish_chunk(chunk.id, token, ChunkStatus.COMPLETED)

        if not held:
            logger.warning(
                "Lost claim on chunk %d of job %s; dropping results",
                chunk.chunk_number,
                job_id,
            )
            return
        await self._advance(job_id)

    async def _process(self, chunk: ReplacementChunk, token: str) -> bool:
        """Process every item; returns False once the claim has been lost."""
        loop = asyncio.get_running_loop()
        counters = dict.fromkeys(OUTCOMES, 0)
        last_beat = loop.time()

        for position, item in enumerate(chunk.items, start=1):
            outcome = await self._process_item(item)
            counters[outcome] += 1

            beat = loop.time() - last_beat >= self.heartbeat_interval
            if beat:
                last_beat = loop.time()
            if not await self.db.update_chunk_progress(
                chunk.id, token, position, counters, heartbeat=beat
            ):
                return False
        return True

    async def _process_item(self, item: WorkItem) -> str:
        try:
            article = await self.db.get_article(item.article_id)
            if article is None or not article.holds_url(item.url):
                logger.debug("Skipping %s: no longer cited by %s", item.url, item.article_id)
                return "skipped"

            suggestions = await self.discoverer.discover(
                article, item.url, item.source, item.reason
            )
            for suggestion in suggestions:
                verdict = await self.gate.evaluate(suggestion, article)
                if verdict is SuggestionStatus.REJECTED:
                    continue
                if verdict is SuggestionStatus.SUGGESTED:
                    return "manual_review"
                try:
                    await self.patcher.apply_replacement(suggestion.id)
                except ApplicationError as exc:
                    logger.warning("Auto-apply of %s deferred: %s", suggestion.id, exc.message)
                    return "manual_review"
                return "auto_applied"

            logger.info("Every suggestion for %s was rejected", item.url)
            return "failed"
        except Exception:
            logger.exception("Replacement failed for %s in article %s", item.url, item.article_id)
            return "failed"

    async def _advance(self, job_id: str) -> None:
        await self.db.aggregate_job(job_id)
        if await self.db.next_pending_chunk(job_id) is not None:
            self.queue.enqueue(job_id)
        else:
            await self.finalize(job_id)

    async def finalize(self, job_id: str) -> None:
        """Complete the job once every chunk has finished."""
        job = await self.db.aggregate_job(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return
        if job.finished_chunks == job.total_chunks:
            await self.db.complete_job(job_id)
            logger.info(
                "Job %s completed: %d applied, %d for review, %d failed, %d skipped",
                job_id,
                job.auto_applied,
                job.manual_review,
                job.failed,
                job.skipped,
            )
