import logging

from prometheus_client import Counter
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.core.config import settings

logger = logging.getLogger(__name__)

_PROM_RATE_LIMIT = Counter("prodai_rate_limit_exceeded_events", "Rate limit exceeded events (handler invocations)")


def get_client_identifier(request: Request) -> str:
    """Client IP as seen by our proxy: the last X-Forwarded-For hop.

    Earlier hops are supplied by the caller and cannot be trusted.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if hops:
        return hops[-1]
    return get_remote_address(request)


def _storage_uri() -> str:
    uri = settings.RATE_LIMIT_STORAGE_URI or "memory://"
    if settings.ENV.lower() != "prod" and uri != "memory://":
        logger.info("Rate limiter using in-memory storage (dev/test mode)")
        return "memory://"
    return uri


limiter = Limiter(key_func=get_client_identifier, storage_uri=_storage_uri())

_IS_PROD = settings.ENV.lower() == "prod"

RATE_LIMITS = {
    # Mercado Pago retries aggressively after outages
    "webhook_mercadopago": "120/minute" if _IS_PROD else "1000/minute",
    "subscription_checkout": "10/minute" if _IS_PROD else "1000/minute",
    "subscription_mutation": "20/minute" if _IS_PROD else "1000/minute",
    "chat_allowance": "30/minute" if _IS_PROD else "1000/minute",
}


def increment_rate_limit_exceeded():
    _PROM_RATE_LIMIT.inc()
