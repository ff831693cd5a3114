"""Mercado Pago preapproval (recurring agreement) API client.

Thin synchronous wrapper over ``httpx`` used by request handlers and the
worker. Every failure is mapped onto the application's exception taxonomy:

- transport errors, non-2xx answers and unexpected bodies -> ``GatewayError``
- 404 for a known agreement id -> ``SubscriptionNotFound``
"""
from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app import metrics
from app.core.exceptions import GatewayError, SubscriptionNotFound
from app.models.models import as_utc

logger = logging.getLogger(__name__)

STATUS_AUTHORIZED = "authorized"
STATUS_CANCELLED = "cancelled"
STATUS_PENDING = "pending"


@dataclass(frozen=True)
class Preapproval:
    id: str
    status: str | None = None
    payer_email: str | None = None
    external_reference: str | None = None
    next_payment_date: dt.datetime | None = None
    init_point: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Preapproval:
        next_payment = data.get("next_payment_date")
        try:
            next_payment_date = as_utc(next_payment) if next_payment else None
        except (TypeError, ValueError):
            logger.warning("Ignoring unparseable next_payment_date=%r for preapproval %s", next_payment, data.get("id"))
            next_payment_date = None
        return cls(
            id=str(data["id"]),
            status=(data.get("status") or None),
            payer_email=data.get("payer_email") or None,
            external_reference=data.get("external_reference") or None,
            next_payment_date=next_payment_date,
            init_point=data.get("init_point") or None,
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED


def parse_signature_header(header: str | None) -> tuple[str | None, str | None]:
    """Split ``ts=...,v1=...`` into its timestamp and hash."""
    ts = v1 = None
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            v1 = value.strip()
    return ts, v1


def compute_webhook_signature(secret: str, ts: str, data_id: str | None, request_id: str | None) -> str:
    manifest = ""
    if data_id:
        manifest += f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


class MercadoPagoClient:
    def __init__(
        self,
        access_token: str | None,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 10.0,
        webhook_secret: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.access_token = access_token
        self.webhook_secret = webhook_secret
        self._http = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token or ''}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        agreement_id: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        if not self.access_token:
            metrics.gateway_error(operation)
            raise GatewayError(operation, "MP_ACCESS_TOKEN not configured")
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            metrics.gateway_error(operation)
            raise GatewayError(operation, f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 404 and agreement_id:
            logger.info("Mercado Pago has no preapproval %s (%s)", agreement_id, operation)
            raise SubscriptionNotFound(agreement_id)
        if response.status_code >= 400:
            metrics.gateway_error(operation)
            raise GatewayError(operation, response.text[:500], response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            metrics.gateway_error(operation)
            raise GatewayError(operation, "response is not JSON", response.status_code) from exc
        if not isinstance(body, dict):
            metrics.gateway_error(operation)
            raise GatewayError(operation, "unexpected response shape", response.status_code)
        return body

    def _preapproval(self, operation: str, body: dict[str, Any]) -> Preapproval:
        if not body.get("id"):
            metrics.gateway_error(operation)
            raise GatewayError(operation, "preapproval without id")
        return Preapproval.from_api(body)

    def get_preapproval(self, agreement_id: str) -> Preapproval:
        body = self._request("get_preapproval", "GET", f"/preapproval/{agreement_id}", agreement_id=agreement_id)
        return self._preapproval("get_preapproval", body)

    def cancel_preapproval(self, agreement_id: str) -> Preapproval:
        body = self._request(
            "cancel_preapproval",
            "PUT",
            f"/preapproval/{agreement_id}",
            agreement_id=agreement_id,
            json={"status": STATUS_CANCELLED},
        )
        logger.info("Cancelled preapproval %s at Mercado Pago", agreement_id)
        return self._preapproval("cancel_preapproval", body)

    def search_preapprovals(self, external_reference: str) -> list[Preapproval]:
        """Agreements whose ``external_reference`` is the given uid, newest first."""
        body = self._request(
            "search_preapprovals",
            "GET",
            "/preapproval/search",
            params={"external_reference": external_reference, "sort": "date_created:desc"},
        )
        results = body.get("results") or []
        return [Preapproval.from_api(item) for item in results if isinstance(item, dict) and item.get("id")]

    def create_preapproval(
        self,
        *,
        payer_email: str,
        external_reference: str,
        reason: str,
        amount: float,
        currency: str,
        back_url: str,
    ) -> Preapproval:
        payload = {
            "reason": reason,
            "external_reference": external_reference,
            "payer_email": payer_email,
            "back_url": back_url,
            "status": STATUS_PENDING,
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "transaction_amount": amount,
                "currency_id": currency,
            },
        }
        body = self._request("create_preapproval", "POST", "/preapproval", json=payload)
        preapproval = self._preapproval("create_preapproval", body)
        if not preapproval.init_point:
            metrics.gateway_error("create_preapproval")
            raise GatewayError("create_preapproval", "preapproval without init_point")
        return preapproval

    def verify_webhook_signature(
        self,
        signature_header: str | None,
        request_id: str | None,
        data_id: str | None,
    ) -> bool:
        """Check the ``x-signature`` header. Always True when no secret is configured."""
        if not self.webhook_secret:
            return True
        ts, received = parse_signature_header(signature_header)
        if not ts or not received:
            return False
        expected = compute_webhook_signature(self.webhook_secret, ts, data_id, request_id)
        return hmac.compare_digest(expected, received)
