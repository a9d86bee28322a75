"""Celery application configuration"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


CELERY_IMPORTS = (
    "infrastructure.tasks.tasks",
)

# 事件通知走 events 队列；过期清理等维护任务走 maintenance，互不阻塞
TASK_QUEUES = ("events", "maintenance")

logger = get_logger(__name__)

celery_app = Celery(settings.redis.namespace)

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # ack after completion so a crashed worker's event is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # notification results are never read back
    task_ignore_result=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="events",
    task_queues=tuple(Queue(name) for name in TASK_QUEUES),
    task_routes={
        "payments.notify_event": {"queue": "events"},
        "payments.expire_pending": {"queue": "maintenance"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=CELERY_IMPORTS,
)

if (settings.ENVIRONMENT or "").lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=bool(sender.conf.broker_url),
        queues=list(TASK_QUEUES),
        eager=bool(sender.conf.task_always_eager),
    )
