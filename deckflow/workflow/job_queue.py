from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Dict, List, Optional

from deckflow.db.job_store import AsyncJobStore
from deckflow.utils.errors import InvalidTransition, NotFound, RateLimited, Unavailable
from deckflow.utils.logging_config import get_logger
from deckflow.utils.types import Job, JobStatus, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RATE_LIMIT_PER_HOUR = 20


class JobQueue:
    """Persistent generation queue; claim, complete and fail are storage-level conditional updates."""

    def __init__(
        self,
        store: AsyncJobStore,
        clock: Optional[Callable[[], dt.datetime]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = 1.0,
        *,
        rate_limit_per_hour: int = DEFAULT_RATE_LIMIT_PER_HOUR,
    ) -> None:
        self.store = store
        self.clock = clock or utcnow
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.rate_limit_per_hour = rate_limit_per_hour

    async def create(
        self,
        type: str,
        payload: Dict[str, Any],
        owner_id: str,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> Job:
        job = await self.store.insert(
            type,
            payload,
            owner_id,
            priority=priority,
            max_attempts=max_attempts or self.max_attempts,
            now=self.clock(),
        )
        logger.info("Job created | job=%s type=%s owner=%s priority=%s", job.job_id, type, owner_id, priority)
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job

    async def claim(self, job_id: str) -> Job:
        if await self.store.mark_processing(job_id, self.clock()):
            logger.debug("Job claimed | job=%s", job_id)
            return await self.get_job(job_id)
        await self.get_job(job_id)
        raise Unavailable(f"Job {job_id} is not pending")

    async def complete(self, job_id: str, result: Dict[str, Any]) -> Job:
        if not await self.store.mark_completed(job_id, result, self.clock()):
            job = await self.get_job(job_id)
            raise InvalidTransition(f"Cannot complete job {job_id} from status {job.status.value}")
        logger.info("Job completed | job=%s", job_id)
        return await self.get_job(job_id)

    async def fail(self, job_id: str, error: str) -> Job:
        job = await self.store.mark_failed(job_id, error, self.clock(), self.backoff_base_seconds)
        if job is None:
            current = await self.get_job(job_id)
            raise InvalidTransition(f"Cannot fail job {job_id} from status {current.status.value}")
        if job.status == JobStatus.FAILED:
            logger.error("Job failed | job=%s attempts=%s error=%s", job_id, job.attempts, error)
        else:
            logger.warning(
                "Job attempt failed, retrying | job=%s attempts=%s next_retry_at=%s error=%s",
                job_id,
                job.attempts,
                job.next_retry_at.isoformat() if job.next_retry_at else None,
                error,
            )
        return job

    async def reclaim_stale(self, older_than: dt.timedelta | float) -> int:
        """Return abandoned processing jobs to pending; safe to call repeatedly."""
        if not isinstance(older_than, dt.timedelta):
            older_than = dt.timedelta(seconds=float(older_than))
        reclaimed = await self.store.reset_stale(self.clock() - older_than)
        if reclaimed:
            logger.warning("Stale jobs reclaimed | count=%s older_than=%s", reclaimed, older_than)
        return reclaimed

    async def claimable(self, limit: int) -> List[Job]:
        return await self.store.claimable(self.clock(), limit)

    async def list_jobs(
        self,
        owner_id: Optional[str] = None,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Job]:
        if status is not None:
            status = JobStatus(status).value
        return await self.store.list(owner_id=owner_id, type=type, status=status, limit=limit)

    async def check_rate_limit(self, owner_id: str, type: str) -> None:
        """Raise RateLimited when the owner already created the hourly maximum of this job type."""
        now = self.clock()
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        count = await self.store.count_since(owner_id, type, hour_start)
        if count >= self.rate_limit_per_hour:
            retry_after = int((hour_start + dt.timedelta(hours=1) - now).total_seconds())
            logger.warning("Job rate limit hit | owner=%s type=%s count=%s", owner_id, type, count)
            raise RateLimited(self.rate_limit_per_hour, max(retry_after, 1))

    async def stats(self) -> Dict[str, int]:
        return await self.store.count_by_status()
