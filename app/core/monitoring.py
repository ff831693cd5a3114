import logging

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration

from app.core.config import settings

logger = logging.getLogger(__name__)

_initialized = False


def init_monitoring() -> None:
    """Start Sentry once per process when a DSN is configured."""
    global _initialized
    if _initialized:
        return
    _initialized = True
    dsn = settings.SENTRY_DSN
    if not dsn:
        return
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FastApiIntegration(), CeleryIntegration()],
        traces_sample_rate=0.1,
        profiles_sample_rate=0.0,
        environment=settings.ENV,
        release=f"prodai-backend@{settings.ENV}",
        send_default_pii=False,
    )
    logger.info("Sentry initialized")
