"""
Celery app for background maintenance.

Usage:
    celery -A app.tasks.celery_app worker --loglevel=INFO
    celery -A app.tasks.celery_app beat --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery


def make_celery() -> Celery:
    """
    Environment variables:
        REDIS_URL: broker URL (default: redis://localhost:6379/0)
        CELERY_RESULT_BACKEND: optional separate result backend
        SWEEP_INTERVAL_SECONDS: beat period for the attempt timeout sweep
    """
    redis_url = os.getenv("REDIS_URL", "") or "redis://localhost:6379/0"
    result_backend = os.getenv("CELERY_RESULT_BACKEND", "") or redis_url
    sweep_every = max(10, int(os.getenv("SWEEP_INTERVAL_SECONDS", "60") or "60"))

    app = Celery(
        "hiring",
        broker=redis_url,
        backend=result_backend,
        include=["app.tasks.attempt_sweep"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        result_expires=86400,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "2")),
        task_default_retry_delay=30,
        beat_schedule={
            "attempt-timeout-sweep": {
                "task": "app.tasks.attempt_sweep.sweep_expired_attempts_task",
                "schedule": float(sweep_every),
            },
        },
    )

    return app


celery_app = make_celery()
