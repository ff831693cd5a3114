"""Metrics facade.

Service code should ONLY call the semantic helpers here so the backend can
change freely. Counters are exposed by ``GET /metrics``.
"""

from __future__ import annotations

import logging

from prometheus_client import Counter

logger = logging.getLogger("metrics")

_ACTIVATIONS = Counter(
    "subscription_activations_total", "Users moved to Plus", ["source"]
)
_ACTIVATIONS_SKIPPED = Counter(
    "subscription_activations_skipped_total", "Activations that found the agreement already stored", ["source"]
)
_CANCELLATIONS = Counter(
    "subscription_cancellations_total", "Recurring agreements cancelled", ["source"]
)
_EXPIRATIONS = Counter(
    "subscription_expirations_total", "Plus records converted back to free", ["path"]
)
_SWEEP_FAILURES = Counter(
    "subscription_sweep_failures_total", "Per-user failures during the expiration sweep"
)
_GATEWAY_ERRORS = Counter(
    "payment_gateway_errors_total", "Failed Mercado Pago calls", ["operation"]
)
_WEBHOOK_EVENTS = Counter(
    "payment_webhook_events_total", "Mercado Pago webhook deliveries", ["type", "outcome"]
)
_CHECKOUTS = Counter("subscription_checkouts_total", "Checkout links created")
_QUOTA_REJECTIONS = Counter(
    "chat_quota_rejections_total", "Chat messages refused because the daily quota is spent"
)


def subscription_activated(source: str) -> None:
    _ACTIVATIONS.labels(source=source).inc()


def subscription_activation_skipped(source: str) -> None:
    _ACTIVATIONS_SKIPPED.labels(source=source).inc()


def subscription_cancelled(source: str) -> None:
    _CANCELLATIONS.labels(source=source).inc()


def subscription_expired(path: str) -> None:
    _EXPIRATIONS.labels(path=path).inc()


def sweep_failure() -> None:
    _SWEEP_FAILURES.inc()


def gateway_error(operation: str) -> None:
    _GATEWAY_ERRORS.labels(operation=operation).inc()


def webhook_event(event_type: str, outcome: str) -> None:
    _WEBHOOK_EVENTS.labels(type=event_type or "unknown", outcome=outcome).inc()


def checkout_created() -> None:
    _CHECKOUTS.inc()


def quota_rejected() -> None:
    _QUOTA_REJECTIONS.inc()
