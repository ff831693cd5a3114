from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings


def _create_celery() -> Celery:
    celery = Celery(
        "prodai",
        broker=settings.REDIS_URL,
        backend=settings.REDIS_URL,
        include=["app.workers.tasks"],
    )
    celery.conf.update(
        task_default_queue="default",
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_always_eager=settings.ENV.lower() in {"test"},
    )
    # Beat schedule (only active outside test env)
    if settings.ENV.lower() not in {"test"}:
        celery.conf.beat_schedule = {
            "expire-plus-subscriptions": {
                "task": "subscriptions.sweep_expired",
                # Default hours are 00/06/12/18 in America/Sao_Paulo
                "schedule": crontab(minute=0, hour=settings.SWEEP_CRON_HOURS),
            }
        }
    return celery


celery_app = _create_celery()
