"""
Celery app for work that should not run on the request path.

Usage:
    celery -A app.tasks.celery_app worker -Q reports --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery

REPORTS_QUEUE = "reports"


def make_celery() -> Celery:
    """
    Build the Celery app on a Redis broker.

    Environment variables:
        REDIS_URL: broker URL (default: redis://localhost:6379/0)
        CELERY_RESULT_BACKEND: result store, defaults to the broker
        CELERY_CONCURRENCY: worker processes (default 2)
        REPORT_TASK_TIME_LIMIT: hard limit in seconds for one report (default 300)
    """
    broker = os.getenv("REDIS_URL", "") or "redis://localhost:6379/0"
    backend = os.getenv("CELERY_RESULT_BACKEND", "") or broker
    time_limit = int(os.getenv("REPORT_TASK_TIME_LIMIT", "300") or "300")

    app = Celery(
        "venue_onboarding",
        broker=broker,
        backend=backend,
        include=["app.tasks.compliance_reports"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        # Reports are polled via /api/jobs/<id>; keep results for a day.
        result_expires=86400,
        # Report STARTED while a worker holds the job.
        task_track_started=True,

        task_routes={"app.tasks.compliance_reports.*": {"queue": REPORTS_QUEUE}},
        task_time_limit=time_limit,
        task_soft_time_limit=max(1, time_limit - 30),

        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "2")),

        task_default_rate_limit="30/m",
    )

    return app


celery_app = make_celery()
