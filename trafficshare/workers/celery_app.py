"""trafficshare/workers/celery_app.py — Celery application for background location batches.

The single `celery_app` object is imported by:
  - trafficshare/workers/tasks.py       (process_location_batch)
  - trafficshare/workers/scheduler.py   callers, which dispatch by task name
  - CLI startup commands                (celery -A trafficshare.workers.celery_app worker -Q location)

Batches for one user must be applied in delivery order, so workers take one
message at a time and acknowledge only after the batch has been processed.
"""
from celery import Celery

from trafficshare.config import settings

celery_app = Celery(
    "trafficshare",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["trafficshare.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_routes={"trafficshare.workers.tasks.process_location_batch": {"queue": "location"}},
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    # Each fix may wait on two oracle calls of ORACLE_TIMEOUT_SECONDS
    task_soft_time_limit=30,
    task_time_limit=60,
    result_expires=3600,
    timezone="UTC",
    enable_utc=True,
)
