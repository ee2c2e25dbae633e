from __future__ import annotations

import os

from celery import Celery

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "").lower() in {"1", "true", "yes"}
DISPATCH_INTERVAL_SECONDS = float(os.getenv("DISPATCH_INTERVAL_SECONDS", "30"))
STALE_JOB_SECONDS = int(os.getenv("STALE_JOB_SECONDS", "600"))

celery_app = Celery(
    "deckflow",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["deckflow.celery_tasks.jobs"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "900")),
    task_always_eager=CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
    beat_schedule={
        "dispatch-pending-jobs": {
            "task": "jobs.dispatch_pending",
            "schedule": DISPATCH_INTERVAL_SECONDS,
        },
        "reclaim-stale-jobs": {
            "task": "jobs.reclaim_stale",
            "schedule": max(60.0, STALE_JOB_SECONDS / 2),
        },
    },
)
