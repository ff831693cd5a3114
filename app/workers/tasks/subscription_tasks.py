"""
Subscription Tasks.

Periodic conversion of expired Plus subscriptions back to the free tier.
"""
from __future__ import annotations

import logging
import threading

from celery import Task

from app.core.logger import init_logging
from app.core.monitoring import init_monitoring
from app.services.container import Services, build_services
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_services: Services | None = None
_services_lock = threading.Lock()


def get_worker_services() -> Services:
    """Services for this worker process, built on first use."""
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                init_logging()
                init_monitoring()
                _services = build_services()
    return _services


def set_worker_services(services: Services | None) -> None:
    global _services
    _services = services


@celery_app.task(bind=True, name="subscriptions.sweep_expired")
def sweep_expired_subscriptions(self: Task, dry_run: bool = False) -> dict:
    """Move every Plus user whose ``expiresAt`` has passed back to free.

    No autoretry: users missed by a failed run are picked up by the next one.
    """
    services = get_worker_services()
    result = services.lifecycle.sweep_expired(dry_run=dry_run)
    if result.failed:
        logger.warning(
            "[subscriptions.sweep_expired] completed with %s failures out of %s scanned",
            result.failed, result.scanned,
        )
    if result.interrupted:
        logger.warning("[subscriptions.sweep_expired] interrupted after %s scanned", result.scanned)
    return result.as_dict()
