import json
import logging
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app import metrics
from app.api.dependencies import ServicesDep
from app.api.rate_limit import RATE_LIMITS, limiter
from app.core.exceptions import GatewayError, InvalidWebhookSignature
from app.services.subscription import WebhookEvent

logger = logging.getLogger(__name__)
router = APIRouter()


async def _read_payload(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Mercado Pago webhook with malformed body: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


@router.post("/mercadopago")
@limiter.limit(RATE_LIMITS["webhook_mercadopago"])
async def mercadopago_webhook(
    request: Request,
    services: ServicesDep,
    x_signature: Annotated[str | None, Header()] = None,
    x_request_id: Annotated[str | None, Header()] = None,
):
    """Handle Mercado Pago preapproval and payment notifications.

    Always answers 200 for events we cannot act on (unknown user, unrelated
    type) so Mercado Pago stops redelivering them. Gateway failures while
    looking up the agreement answer 502 so it tries again later.
    """
    payload = await _read_payload(request)
    # Newer notification formats carry the type and id only in the query string
    if not payload.get("type") and request.query_params.get("type"):
        payload["type"] = request.query_params["type"]
    data = payload.get("data")
    if not isinstance(data, dict):
        data = payload["data"] = {}
    if not data.get("id") and request.query_params.get("data.id"):
        data["id"] = request.query_params["data.id"]

    data_id = request.query_params.get("data.id") or (str(data["id"]) if data.get("id") else None)
    if not services.gateway.verify_webhook_signature(x_signature, x_request_id, data_id):
        logger.warning("Mercado Pago webhook signature mismatch (request-id=%s)", x_request_id)
        metrics.webhook_event(str(payload.get("type") or ""), "invalid_signature")
        raise InvalidWebhookSignature()

    event = WebhookEvent.from_payload(payload)
    try:
        outcome = await run_in_threadpool(services.lifecycle.activate_from_webhook, event)
    except GatewayError:
        metrics.webhook_event(event.type, "gateway_error")
        raise
    metrics.webhook_event(event.type, outcome)
    logger.info("Mercado Pago webhook type=%s id=%s outcome=%s", event.type, event.agreement_id, outcome)
    return {"status": outcome}
