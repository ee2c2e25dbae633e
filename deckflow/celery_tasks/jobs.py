from __future__ import annotations

import asyncio
from typing import Any, Dict

from celery_app import celery_app
from deckflow.utils.logging_config import get_logger
from deckflow.workflow.runtime import DeckflowRuntime
from deckflow.workflow.utils.settings import default_settings

logger = get_logger(__name__)


async def _dispatch_pending(limit: int | None) -> list[str]:
    runtime = await DeckflowRuntime(default_settings()).start()
    try:
        return await runtime.dispatcher.run_batch(limit)
    finally:
        await runtime.close()


async def _reclaim_stale(older_than_seconds: int) -> int:
    runtime = await DeckflowRuntime(default_settings()).start()
    try:
        return await runtime.queue.reclaim_stale(older_than_seconds)
    finally:
        await runtime.close()


@celery_app.task(name="jobs.dispatch_pending")
def dispatch_pending_task(limit: int | None = None) -> Dict[str, Any]:
    """Beat tick: claim and run one bounded batch of pending jobs."""
    processed = asyncio.run(_dispatch_pending(limit))
    logger.info("Dispatch tick | processed=%s", len(processed))
    return {"processed": processed, "count": len(processed)}


@celery_app.task(name="jobs.reclaim_stale")
def reclaim_stale_task(older_than_seconds: int | None = None) -> Dict[str, Any]:
    """Beat tick: return abandoned processing jobs to pending. Errors wait for the next tick."""
    seconds = older_than_seconds or default_settings().stale_job_seconds
    try:
        reclaimed = asyncio.run(_reclaim_stale(seconds))
    except Exception:
        logger.error("Stale job reclamation failed | older_than=%s", seconds, exc_info=True)
        return {"reclaimed": 0, "error": True}
    return {"reclaimed": reclaimed, "error": False}
