"""State transitions of the subscription record.

Each function takes the current ``SubscriptionRecord`` and returns the merge
patch that moves it to the next state, or ``None`` when nothing changes.
Nothing here touches Firestore or the payment gateway.
"""
from __future__ import annotations

import datetime as dt

from app.core.exceptions import DailyQuotaExceeded
from app.models.models import (
    DELETE,
    FREE_DAILY_MESSAGES,
    Field,
    Patch,
    SubscriptionPlan,
    SubscriptionRecord,
    SubscriptionStatus,
)


def is_expired(record: SubscriptionRecord, now: dt.datetime) -> bool:
    """Plus access whose paid period has run out."""
    if record.plan != SubscriptionPlan.PLUS or record.expires_at is None:
        return False
    return record.expires_at <= now


def activation_patch(record: SubscriptionRecord, agreement_id: str, now: dt.datetime) -> Patch | None:
    """Move the record to Plus under ``agreement_id``.

    Re-activating with the agreement already on file is a no-op so that
    webhook redeliveries and double submits do not bump ``upgradedAt``.
    """
    if not agreement_id or not agreement_id.strip():
        raise ValueError("agreement_id is required to activate plus")
    if record.external_agreement_id == agreement_id and (
        record.plan == SubscriptionPlan.PLUS or record.is_cancelled
    ):
        return None
    return {
        Field.PLAN: SubscriptionPlan.PLUS.value,
        Field.IS_PLUS: True,
        Field.SUBSCRIPTION_STATUS: DELETE,
        Field.EXTERNAL_AGREEMENT_ID: agreement_id,
        Field.UPGRADED_AT: now,
        # Leftovers of an earlier agreement
        Field.EXPIRES_AT: DELETE,
        Field.CANCELLED_AT: DELETE,
        Field.PREVIOUS_PLAN: DELETE,
    }


def cancellation_patch(
    record: SubscriptionRecord,
    now: dt.datetime,
    gateway_expires_at: dt.datetime | None = None,
    fallback_days: int = 30,
) -> Patch | None:
    """Stop renewal while keeping access until the paid period ends.

    ``plan`` and ``isPlus`` are left alone; the sweep revokes access later.
    """
    if record.is_cancelled:
        return None
    expires_at = gateway_expires_at or record.expires_at or now + dt.timedelta(days=fallback_days)
    return {
        Field.SUBSCRIPTION_STATUS: SubscriptionStatus.CANCELLED.value,
        Field.CANCELLED_AT: now,
        Field.EXPIRES_AT: expires_at,
    }


def expiration_patch(
    record: SubscriptionRecord,
    now: dt.datetime,
    daily_limit: int = FREE_DAILY_MESSAGES,
) -> Patch | None:
    """Convert an expired Plus record back to the free tier with a fresh quota."""
    if not is_expired(record, now):
        return None
    return {
        Field.PLAN: SubscriptionPlan.FREE.value,
        Field.IS_PLUS: False,
        Field.PREVIOUS_PLAN: SubscriptionPlan.PLUS.value,
        Field.DOWNGRADED_AT: now,
        Field.REMAINING_MESSAGES: daily_limit,
        Field.LAST_RESET_AT: now,
    }


def needs_daily_reset(record: SubscriptionRecord, now: dt.datetime) -> bool:
    if record.last_reset_at is None:
        return True
    return record.last_reset_at.astimezone(dt.timezone.utc).date() < now.astimezone(dt.timezone.utc).date()


def quota_patch(
    record: SubscriptionRecord,
    now: dt.datetime,
    daily_limit: int = FREE_DAILY_MESSAGES,
) -> Patch | None:
    """Reset the counter on a new UTC day and spend one message for free users.

    Raises:
        DailyQuotaExceeded: free user with nothing left today
    """
    if record.plan == SubscriptionPlan.PLUS:
        return None
    patch: Patch = {}
    remaining = record.remaining_messages
    if needs_daily_reset(record, now):
        remaining = daily_limit
        patch[Field.LAST_RESET_AT] = now
    if remaining <= 0:
        raise DailyQuotaExceeded(daily_limit)
    patch[Field.REMAINING_MESSAGES] = remaining - 1
    return patch
