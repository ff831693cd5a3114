"""Request and response schemas for subscription endpoints.

Keeps the Mercado Pago agreement id and other internal fields out of
responses.
"""
from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field, field_validator


# ── Activation ────────────────────────────────────────────────────────

class ActivateSubscriptionIn(BaseModel):
    preapproval_id: str = Field(min_length=1, max_length=128)

    @field_validator("preapproval_id")
    @classmethod
    def _strip_preapproval_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("preapproval_id must not be blank")
        return value


class ActivateSubscriptionOut(BaseModel):
    success: bool = True
    changed: bool


# ── Cancellation ──────────────────────────────────────────────────────

class CancelSubscriptionOut(BaseModel):
    success: bool = True
    plan: str
    expires_at: dt.datetime | None = None
    message: str


# ── Checkout ──────────────────────────────────────────────────────────

class CheckoutOut(BaseModel):
    init_point: str


# ── Status ────────────────────────────────────────────────────────────

class SubscriptionStatusOut(BaseModel):
    plan: str
    is_plus: bool
    subscription_status: str | None = None
    expires_at: dt.datetime | None = None
    cancelled_at: dt.datetime | None = None
    upgraded_at: dt.datetime | None = None
    remaining_messages: int | None = None
