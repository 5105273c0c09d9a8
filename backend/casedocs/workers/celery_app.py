"""
Celery Application Factory

Drives the OCR job queue on a schedule. The beat entry
"process-ocr-queue" fires every settings.ocr_queue_poll_seconds and each
run drains one bounded batch (QueueProcessor.run_once). Job state lives in
PostgreSQL (ocr_jobs), so Celery results are informational only.

Queue topology:
  ocr.process    — scheduled batch runs
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from casedocs.core.config import settings

logger = logging.getLogger(__name__)

PROCESS_TASK = "casedocs.workers.tasks.process_ocr_queue"

OCR_EXCHANGE = Exchange("ocr", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "ocr.process",
        exchange=OCR_EXCHANGE,
        routing_key="ocr.process",
        durable=True,
    ),
)

TASK_ROUTES = {
    PROCESS_TASK: {"queue": "ocr.process"},
}


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("casedocs")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="ocr.process",
        task_default_exchange="ocr",
        task_default_routing_key="ocr.process",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=600,
        task_time_limit=660,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "process-ocr-queue": {
                "task":     PROCESS_TASK,
                "schedule": settings.ocr_queue_poll_seconds,
                "options":  {"queue": "ocr.process", "expires": settings.ocr_queue_poll_seconds},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["casedocs.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s result=%s",
        task_id, task.name, state, retval,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
