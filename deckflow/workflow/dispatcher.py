from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from deckflow.utils.errors import NoHandler, Unavailable
from deckflow.utils.logging_config import get_logger
from deckflow.utils.types import Job
from deckflow.workflow.job_queue import JobQueue
from deckflow.workflow.utils.progress import JobStatusPublisher

logger = get_logger(__name__)

JobHandler = Callable[[Dict[str, Any], Job], Awaitable[Dict[str, Any]]]


class JobDispatcher:
    """Claims pending jobs and runs the handler registered for each job type."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: Mapping[str, JobHandler],
        *,
        batch_size: int = 5,
        publisher: Optional[JobStatusPublisher] = None,
    ) -> None:
        self.queue = queue
        self.handlers = dict(handlers)
        self.batch_size = batch_size
        self.publisher = publisher
        self._tasks: Set[asyncio.Task] = set()

    async def _publish(self, job: Job) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(job)

    async def dispatch(self, job: Job) -> Job:
        """Run one claimed job; handler errors become a failed attempt, never an exception."""
        handler = self.handlers.get(job.type)
        if handler is None:
            updated = await self.queue.fail(job.job_id, str(NoHandler(job.type)))
            await self._publish(updated)
            return updated

        await self._publish(job)
        try:
            result = await handler(job.payload, job)
        except Exception as exc:
            logger.warning("Job handler raised | job=%s type=%s", job.job_id, job.type, exc_info=True)
            updated = await self.queue.fail(job.job_id, str(exc) or exc.__class__.__name__)
        else:
            updated = await self.queue.complete(job.job_id, result or {})
        await self._publish(updated)
        return updated

    async def run_batch(self, limit: Optional[int] = None) -> List[str]:
        """Claim up to ``limit`` claimable jobs and dispatch them concurrently."""
        limit = self.batch_size if limit is None else min(limit, self.batch_size)
        claimed: List[Job] = []
        for candidate in await self.queue.claimable(limit):
            try:
                claimed.append(await self.queue.claim(candidate.job_id))
            except Unavailable:
                logger.debug("Job already claimed elsewhere | job=%s", candidate.job_id)
        if not claimed:
            return []
        logger.info("Dispatching batch | size=%s", len(claimed))
        results = await asyncio.gather(*(self.dispatch(job) for job in claimed), return_exceptions=True)
        processed: List[str] = []
        for job, outcome in zip(claimed, results):
            if isinstance(outcome, BaseException):
                logger.error("Dispatch error | job=%s", job.job_id, exc_info=outcome)
                continue
            processed.append(job.job_id)
        return processed

    def trigger(self, limit: Optional[int] = None) -> asyncio.Task:
        """Start a batch in the background; the caller does not wait for it."""
        task = asyncio.get_running_loop().create_task(self.run_batch(limit))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background dispatch failed", exc_info=exc)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
