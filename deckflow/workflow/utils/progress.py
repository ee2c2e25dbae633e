from __future__ import annotations

import json
from typing import Any, Dict

from redis.asyncio import Redis as AsyncRedis

from deckflow.utils.logging_config import get_logger
from deckflow.utils.types import Job

logger = get_logger(__name__)


def job_status_key(job_id: str) -> str:
    return f"job:{job_id}"


def job_status_channel(job_id: str) -> str:
    return f"progress:{job_id}"


def job_snapshot(job: Job) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "type": job.type,
        "status": job.status.value,
        "attempts": job.attempts,
        "error": job.error,
        "last_error": job.last_error,
    }


class JobStatusPublisher:
    """Mirrors job status changes into a Redis hash and pubsub channel for live clients."""

    def __init__(self, redis_url: str | None = None, client: AsyncRedis | None = None):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self._client = client
        self.redis_url = redis_url

    def _get_client(self) -> AsyncRedis:
        if self._client is None:
            self._client = AsyncRedis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def publish(self, job: Job) -> None:
        payload = job_snapshot(job)
        try:
            client = self._get_client()
            await client.hset(
                job_status_key(job.job_id),
                mapping={k: str(v) for k, v in payload.items() if v is not None},
            )
            await client.publish(job_status_channel(job.job_id), json.dumps(payload))
        except Exception:
            logger.warning("Failed to publish job status | job=%s status=%s", job.job_id, payload["status"], exc_info=True)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_publisher(settings) -> JobStatusPublisher | None:
    url = getattr(settings, "progress_redis_url", "") or ""
    return JobStatusPublisher(url) if url else None
