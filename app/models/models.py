"""User subscription record as stored in the Firestore user document."""
from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Any, Mapping

FREE_DAILY_MESSAGES = 10


class SubscriptionPlan(str, enum.Enum):
    """Commercial tier of a user."""
    FREE = "free"
    PLUS = "plus"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> SubscriptionPlan:
        """Unknown or missing values are treated as the free tier."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.FREE


class SubscriptionStatus(str, enum.Enum):
    """Billing-facing status of the recurring agreement."""
    ACTIVE = "active"
    CANCELLED = "cancelled"


class _Delete:
    """Marker for a field that must be removed from the document."""

    _instance: _Delete | None = None

    def __new__(cls) -> _Delete:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE"


DELETE = _Delete()

Patch = dict[str, Any]


class Field:
    """Firestore field names of the user document."""
    PLAN = "plan"
    IS_PLUS = "isPlus"
    SUBSCRIPTION_STATUS = "subscriptionStatus"
    EXTERNAL_AGREEMENT_ID = "externalAgreementId"
    EXPIRES_AT = "expiresAt"
    CANCELLED_AT = "cancelledAt"
    UPGRADED_AT = "upgradedAt"
    DOWNGRADED_AT = "downgradedAt"
    PREVIOUS_PLAN = "previousPlan"
    REMAINING_MESSAGES = "remainingMessages"
    LAST_RESET_AT = "lastResetAt"
    EMAIL = "email"
    UID = "uid"
    CREATED_AT = "createdAt"


def as_utc(value: Any) -> dt.datetime | None:
    """Normalise stored timestamps (datetime, ISO string, epoch millis) to aware UTC."""
    if value is None or value is DELETE:
        return None
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)
    if isinstance(value, str):
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def _parse_status(value: Any) -> SubscriptionStatus | None:
    if not value:
        return None
    try:
        return SubscriptionStatus(str(value).lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class SubscriptionRecord:
    """Typed view over the subscription fields of one user document."""
    uid: str
    plan: SubscriptionPlan = SubscriptionPlan.FREE
    is_plus: bool = False
    subscription_status: SubscriptionStatus | None = None
    external_agreement_id: str | None = None
    expires_at: dt.datetime | None = None
    cancelled_at: dt.datetime | None = None
    upgraded_at: dt.datetime | None = None
    downgraded_at: dt.datetime | None = None
    previous_plan: SubscriptionPlan | None = None
    remaining_messages: int = FREE_DAILY_MESSAGES
    last_reset_at: dt.datetime | None = None
    email: str | None = None

    @classmethod
    def from_document(cls, uid: str, data: Mapping[str, Any]) -> SubscriptionRecord:
        status = data.get(Field.SUBSCRIPTION_STATUS)
        previous = data.get(Field.PREVIOUS_PLAN)
        remaining = data.get(Field.REMAINING_MESSAGES)
        return cls(
            uid=uid,
            plan=SubscriptionPlan.parse(data.get(Field.PLAN)),
            is_plus=bool(data.get(Field.IS_PLUS, False)),
            subscription_status=_parse_status(status),
            external_agreement_id=data.get(Field.EXTERNAL_AGREEMENT_ID) or None,
            expires_at=as_utc(data.get(Field.EXPIRES_AT)),
            cancelled_at=as_utc(data.get(Field.CANCELLED_AT)),
            upgraded_at=as_utc(data.get(Field.UPGRADED_AT)),
            downgraded_at=as_utc(data.get(Field.DOWNGRADED_AT)),
            previous_plan=SubscriptionPlan.parse(previous) if previous else None,
            remaining_messages=FREE_DAILY_MESSAGES if remaining is None else int(remaining),
            last_reset_at=as_utc(data.get(Field.LAST_RESET_AT)),
            email=data.get(Field.EMAIL),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.subscription_status == SubscriptionStatus.CANCELLED


def new_user_document(uid: str, email: str | None, now: dt.datetime) -> Patch:
    """Initial document written the first time a user authenticates."""
    return {
        Field.UID: uid,
        Field.EMAIL: email,
        Field.PLAN: SubscriptionPlan.FREE.value,
        Field.IS_PLUS: False,
        Field.REMAINING_MESSAGES: FREE_DAILY_MESSAGES,
        Field.LAST_RESET_AT: now,
        Field.CREATED_AT: now,
    }


def apply_patch(data: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Merge-write semantics: set patched fields, drop DELETE-marked ones, keep the rest."""
    merged = dict(data)
    for key, value in patch.items():
        if value is DELETE:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged
