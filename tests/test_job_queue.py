import asyncio
import datetime as dt

import pytest

from deckflow.db.async_store import AsyncSQLAlchemyStore
from deckflow.db.job_store import AsyncJobStore
from deckflow.utils.errors import InvalidTransition, NotFound, RateLimited, Unavailable
from deckflow.utils.types import JobStatus
from deckflow.workflow.job_queue import JobQueue

OWNER = "user-1"


async def _queue(db_path, clock, **kwargs):
    store = AsyncSQLAlchemyStore(db_path)
    await store.init_models()
    return store, JobQueue(AsyncJobStore(store.SessionLocal), clock=clock, **kwargs)


def test_create_starts_pending(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            job = await queue.create("flashcard_generation", {"content": "cells"}, OWNER, priority=5)
            return job, await queue.get_job(job.job_id)
        finally:
            await store.close()

    created, fetched = asyncio.run(scenario())

    assert created.status == JobStatus.PENDING
    assert created.attempts == 0
    assert created.max_attempts == 3
    assert fetched.payload == {"content": "cells"}
    assert fetched.priority == 5


def test_only_one_concurrent_claim_wins(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            job = await queue.create("flashcard_generation", {}, OWNER)
            results = await asyncio.gather(*(queue.claim(job.job_id) for _ in range(8)), return_exceptions=True)
            return results, await queue.get_job(job.job_id)
        finally:
            await store.close()

    results, stored = asyncio.run(scenario())

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 7
    assert all(isinstance(r, Unavailable) for r in losers)
    assert stored.status == JobStatus.PROCESSING
    assert stored.started_at == dt.datetime(2024, 1, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


def test_claim_unknown_job_is_not_found(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            with pytest.raises(NotFound):
                await queue.claim("missing")
        finally:
            await store.close()

    asyncio.run(scenario())


def test_fail_retries_with_backoff_then_exhausts(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock, max_attempts=3, backoff_base_seconds=1.0)
        try:
            job = await queue.create("distractor_generation", {}, OWNER)
            await queue.claim(job.job_id)
            first = await queue.fail(job.job_id, "timeout")
            hidden = await queue.claimable(10)
            clock.advance(seconds=2)
            visible = await queue.claimable(10)

            await queue.claim(job.job_id)
            second = await queue.fail(job.job_id, "timeout again")
            clock.advance(seconds=4)
            await queue.claim(job.job_id)
            final = await queue.fail(job.job_id, "gave up")
            return first, hidden, visible, second, final
        finally:
            await store.close()

    first, hidden, visible, second, final = asyncio.run(scenario())

    assert first.status == JobStatus.PENDING
    assert first.attempts == 1
    assert first.error is None
    assert first.last_error == "timeout"
    assert first.next_retry_at - first.updated_at == dt.timedelta(seconds=1)
    assert hidden == []
    assert [job.job_id for job in visible] == [first.job_id]

    assert second.status == JobStatus.PENDING
    assert second.next_retry_at - second.updated_at == dt.timedelta(seconds=2)

    assert final.status == JobStatus.FAILED
    assert final.attempts == final.max_attempts == 3
    assert final.error == "gave up"
    assert final.result is None


def test_complete_records_result(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            job = await queue.create("flashcard_generation", {}, OWNER)
            with pytest.raises(InvalidTransition):
                await queue.complete(job.job_id, {"count": 1})
            await queue.claim(job.job_id)
            clock.advance(seconds=3)
            done = await queue.complete(job.job_id, {"count": 1})
            with pytest.raises(InvalidTransition):
                await queue.fail(job.job_id, "late failure")
            with pytest.raises(Unavailable):
                await queue.claim(job.job_id)
            return done
        finally:
            await store.close()

    done = asyncio.run(scenario())

    assert done.status == JobStatus.COMPLETED
    assert done.result == {"count": 1}
    assert done.error is None
    assert done.processed_at == done.updated_at


def test_reclaim_stale_only_touches_old_processing_jobs(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            stale = await queue.create("flashcard_generation", {}, OWNER)
            await queue.claim(stale.job_id)
            before = await queue.get_job(stale.job_id)
            clock.advance(minutes=10)
            fresh = await queue.create("flashcard_generation", {}, OWNER)
            await queue.claim(fresh.job_id)

            reclaimed = await queue.reclaim_stale(dt.timedelta(minutes=5))
            again = await queue.reclaim_stale(dt.timedelta(minutes=5))
            return before, await queue.get_job(stale.job_id), await queue.get_job(fresh.job_id), reclaimed, again
        finally:
            await store.close()

    before, stale, fresh, reclaimed, again = asyncio.run(scenario())

    assert reclaimed == 1
    assert again == 0
    assert stale.status == JobStatus.PENDING
    assert stale.attempts == before.attempts
    assert stale.started_at == before.started_at
    assert stale.updated_at == before.updated_at
    assert fresh.status == JobStatus.PROCESSING


def test_claimable_orders_by_priority_then_age(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            low = await queue.create("a", {}, OWNER, priority=0)
            clock.advance(seconds=1)
            high = await queue.create("a", {}, OWNER, priority=10)
            clock.advance(seconds=1)
            low_later = await queue.create("a", {}, OWNER, priority=0)
            order = [job.job_id for job in await queue.claimable(10)]
            return order, [high.job_id, low.job_id, low_later.job_id]
        finally:
            await store.close()

    order, expected = asyncio.run(scenario())

    assert order == expected


def test_rate_limit_counts_jobs_in_the_current_hour(db_path, clock):
    clock.now = dt.datetime(2024, 1, 1, 10, 15, tzinfo=dt.timezone.utc)

    async def scenario():
        store, queue = await _queue(db_path, clock, rate_limit_per_hour=2)
        try:
            await queue.check_rate_limit(OWNER, "flashcard_generation")
            await queue.create("flashcard_generation", {}, OWNER)
            await queue.create("flashcard_generation", {}, OWNER)
            await queue.check_rate_limit(OWNER, "distractor_generation")
            await queue.check_rate_limit("someone-else", "flashcard_generation")
            with pytest.raises(RateLimited) as excinfo:
                await queue.check_rate_limit(OWNER, "flashcard_generation")
            clock.advance(hours=1)
            await queue.check_rate_limit(OWNER, "flashcard_generation")
            return excinfo.value
        finally:
            await store.close()

    error = asyncio.run(scenario())

    assert error.retry_after == 45 * 60
    assert error.limit == 2


def test_stats_and_listing(db_path, clock):
    async def scenario():
        store, queue = await _queue(db_path, clock)
        try:
            done = await queue.create("a", {}, OWNER)
            await queue.claim(done.job_id)
            await queue.complete(done.job_id, {})
            await queue.create("b", {}, OWNER)
            await queue.create("b", {}, "user-2")
            return (
                await queue.stats(),
                await queue.list_jobs(owner_id=OWNER),
                await queue.list_jobs(owner_id=OWNER, status="pending"),
            )
        finally:
            await store.close()

    stats, mine, pending = asyncio.run(scenario())

    assert stats == {"pending": 2, "processing": 0, "completed": 1, "failed": 0}
    assert len(mine) == 2
    assert [job.type for job in pending] == ["b"]
