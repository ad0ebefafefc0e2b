"""Celery app for relay hops, queue consumers and the watchdog. Uses Redis; DB session per task."""
import logging

from celery import Celery

from .config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

celery_app = Celery(
    "bizzybee",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["bizzybee.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # A hop must finish well inside the budget; the hard limit only catches runaways.
    task_soft_time_limit=int(settings.consolidate_time_budget_s) + 30,
    task_time_limit=int(settings.consolidate_time_budget_s) + 60,
    beat_schedule={
        "drain-import-queue": {"task": "bizzybee.tasks.drain_import_queue", "schedule": 15.0},
        "drain-classify-queue": {"task": "bizzybee.tasks.drain_classify_queue", "schedule": 10.0},
        "drain-draft-queue": {"task": "bizzybee.tasks.drain_draft_queue", "schedule": 10.0},
        "pipeline-watchdog": {"task": "bizzybee.tasks.pipeline_watchdog", "schedule": 120.0},
    },
)
