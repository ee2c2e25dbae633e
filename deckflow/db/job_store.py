from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deckflow.db.async_store import new_id
from deckflow.db.models import Job
from deckflow.utils.types import Job as JobRecord
from deckflow.utils.types import JobStatus

PENDING = JobStatus.PENDING.value
PROCESSING = JobStatus.PROCESSING.value
COMPLETED = JobStatus.COMPLETED.value
FAILED = JobStatus.FAILED.value


def _job_from_row(row: Job) -> JobRecord:
    return JobRecord(
        job_id=row.job_id,
        type=row.type,
        owner_id=row.owner_id,
        payload=dict(row.payload or {}),
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        priority=row.priority,
        created_at=row.created_at,
        updated_at=row.updated_at,
        result=row.result,
        error=row.error,
        last_error=row.last_error,
        started_at=row.started_at,
        processed_at=row.processed_at,
        next_retry_at=row.next_retry_at,
    )


class AsyncJobStore:
    """Job rows with conditional status updates; every transition is a single UPDATE."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.SessionLocal = session_factory

    async def insert(
        self,
        type: str,
        payload: Dict[str, Any],
        owner_id: str,
        *,
        priority: int,
        max_attempts: int,
        now: dt.datetime,
    ) -> JobRecord:
        row = Job(
            job_id=new_id(),
            type=type,
            owner_id=owner_id,
            payload=dict(payload or {}),
            status=PENDING,
            attempts=0,
            max_attempts=max_attempts,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        async with self.SessionLocal() as session:
            session.add(row)
            await session.commit()
        return _job_from_row(row)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        async with self.SessionLocal() as session:
            row = await session.get(Job, job_id)
            return _job_from_row(row) if row else None

    async def mark_processing(self, job_id: str, now: dt.datetime) -> bool:
        async with self.SessionLocal() as session:
            res = await session.execute(
                update(Job)
                .where(Job.job_id == job_id, Job.status == PENDING)
                .values(status=PROCESSING, started_at=now, updated_at=now)
            )
            await session.commit()
        return res.rowcount == 1

    async def mark_completed(self, job_id: str, result: Dict[str, Any], now: dt.datetime) -> bool:
        async with self.SessionLocal() as session:
            res = await session.execute(
                update(Job)
                .where(Job.job_id == job_id, Job.status == PROCESSING)
                .values(
                    status=COMPLETED,
                    result=result,
                    error=None,
                    processed_at=now,
                    updated_at=now,
                    next_retry_at=None,
                )
            )
            await session.commit()
        return res.rowcount == 1

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        now: dt.datetime,
        backoff_base_seconds: float,
    ) -> Optional[JobRecord]:
        """Count one failed attempt; back to pending while attempts remain, otherwise failed.

        The update is conditioned on the status and attempt count that were read,
        so a concurrent transition makes it a no-op and ``None`` is returned.
        """
        async with self.SessionLocal() as session:
            row = await session.get(Job, job_id)
            if row is None or row.status != PROCESSING:
                return None
            attempts = row.attempts + 1
            exhausted = attempts >= row.max_attempts
            if exhausted:
                values = dict(status=FAILED, error=error, processed_at=now, next_retry_at=None)
            else:
                delay = dt.timedelta(seconds=backoff_base_seconds * (2 ** row.attempts))
                values = dict(status=PENDING, error=None, next_retry_at=now + delay)
            res = await session.execute(
                update(Job)
                .where(Job.job_id == job_id, Job.status == PROCESSING, Job.attempts == row.attempts)
                .values(attempts=attempts, last_error=error, updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if res.rowcount != 1:
                return None
        return await self.get(job_id)

    async def reset_stale(self, cutoff: dt.datetime) -> int:
        async with self.SessionLocal() as session:
            res = await session.execute(
                update(Job)
                .where(Job.status == PROCESSING, Job.updated_at < cutoff)
                .values(status=PENDING)
            )
            await session.commit()
        return res.rowcount

    async def claimable(self, now: dt.datetime, limit: int) -> List[JobRecord]:
        async with self.SessionLocal() as session:
            stmt = (
                select(Job)
                .where(
                    Job.status == PENDING,
                    or_(Job.next_retry_at.is_(None), Job.next_retry_at <= now),
                )
                .order_by(Job.priority.desc(), Job.created_at.asc(), Job.job_id.asc())
                .limit(limit)
            )
            rows: Iterable[Job] = (await session.execute(stmt)).scalars().all()
            return [_job_from_row(row) for row in rows]

    async def list(
        self,
        *,
        owner_id: str | None = None,
        type: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> List[JobRecord]:
        filters = []
        if owner_id is not None:
            filters.append(Job.owner_id == owner_id)
        if type is not None:
            filters.append(Job.type == type)
        if status is not None:
            filters.append(Job.status == status)
        async with self.SessionLocal() as session:
            stmt = select(Job).order_by(Job.created_at.desc(), Job.job_id.desc()).limit(limit)
            if filters:
                stmt = stmt.where(and_(*filters))
            rows: Iterable[Job] = (await session.execute(stmt)).scalars().all()
            return [_job_from_row(row) for row in rows]

    async def count_since(self, owner_id: str, type: str, since: dt.datetime) -> int:
        async with self.SessionLocal() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(Job)
                .where(Job.owner_id == owner_id, Job.type == type, Job.created_at >= since)
            )
            return int(count or 0)

    async def count_by_status(self) -> Dict[str, int]:
        async with self.SessionLocal() as session:
            rows = (await session.execute(select(Job.status, func.count()).group_by(Job.status))).all()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: int(total) for status, total in rows})
        return counts
