"""In-process scheduler for chunk invocations.

Chunk rows in the database are the durable queue; this class only starts
one independent asyncio task per "process the next chunk of job X" request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[str], Awaitable[None]]


class ChunkQueue:
    def __init__(self, handler: ChunkHandler | None = None) -> None:
        self._handler = handler
        self._tasks: set[asyncio.Task] = set()

    def bind(self, handler: ChunkHandler) -> None:
        self._handler = handler

    def enqueue(self, job_id: str) -> asyncio.Task:
        """Schedule one chunk invocation for ``job_id`` and return at once."""
        if self._handler is None:
            raise RuntimeError("ChunkQueue has no handler bound")
        task = asyncio.create_task(self._handler(job_id), name=f"chunk:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Enqueued chunk invocation for job %s", job_id)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Chunk invocation %s crashed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until no invocation is running, including chained ones."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight invocations; their chunks go stale and can be requeued."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
