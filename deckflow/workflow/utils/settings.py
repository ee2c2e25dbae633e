from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any, Dict


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def default_settings(*, override: dict | None = None) -> SimpleNamespace:
    """Read runtime configuration from the environment."""
    settings = SimpleNamespace(
        db_url=os.getenv("DB_URL", "data/deckflow.db"),
        progress_redis_url=os.getenv("PROGRESS_REDIS_URL", ""),
        celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
        celery_task_always_eager=_env_bool("CELERY_TASK_ALWAYS_EAGER"),
        request_retention=float(os.getenv("REQUEST_RETENTION", 0.9)),
        maximum_interval=int(os.getenv("MAXIMUM_INTERVAL", 36500)),
        fast_answer_threshold_ms=int(os.getenv("FAST_ANSWER_THRESHOLD_MS", 10000)),
        points_per_card=int(os.getenv("POINTS_PER_CARD", 10)),
        collection_capacity=int(os.getenv("COLLECTION_CAPACITY", 1000)),
        cards_per_session=int(os.getenv("CARDS_PER_SESSION", 20)),
        new_cards_per_day=int(os.getenv("NEW_CARDS_PER_DAY", 20)),
        collection_limit=int(os.getenv("COLLECTION_LIMIT", 100)),
        job_max_attempts=int(os.getenv("JOB_MAX_ATTEMPTS", 3)),
        job_batch_size=int(os.getenv("JOB_BATCH_SIZE", 5)),
        job_backoff_seconds=float(os.getenv("JOB_BACKOFF_SECONDS", 1.0)),
        stale_job_seconds=int(os.getenv("STALE_JOB_SECONDS", 600)),
        dispatch_interval_seconds=float(os.getenv("DISPATCH_INTERVAL_SECONDS", 30)),
        job_rate_limit_per_hour=int(os.getenv("JOB_RATE_LIMIT_PER_HOUR", 20)),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
    )
    if override:
        for key, val in override.items():
            setattr(settings, key, val)
    return settings


def normalize_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize common alias keys in job payloads."""
    if settings is None:
        return {}
    normalized = dict(settings)

    # deck_id -> collection_id
    if normalized.get("deck_id") and not normalized.get("collection_id"):
        normalized["collection_id"] = normalized.get("deck_id")
    # flashcard_id -> item_id
    if normalized.get("flashcard_id") and not normalized.get("item_id"):
        normalized["item_id"] = normalized.get("flashcard_id")
    return normalized
