"""Access gate in front of the chat assistant.

Applies a due Plus expiration first, then spends one message of the free
daily quota inside a Firestore transaction so parallel requests cannot
overdraw it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from app import metrics
from app.core.exceptions import DailyQuotaExceeded, RecordNotFound
from app.db.user_store import UserDocument
from app.models.models import Field, Patch, SubscriptionPlan, SubscriptionRecord
from app.services.subscription.lifecycle import SubscriptionLifecycleManager
from app.services.subscription.transitions import quota_patch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatAllowance:
    plan: SubscriptionPlan
    remaining_messages: int | None  # None means unlimited


class ChatAccessGate:
    def __init__(self, lifecycle: SubscriptionLifecycleManager):
        self.lifecycle = lifecycle

    def admit(self, uid: str) -> ChatAllowance:
        """Let one chat message through or raise ``DailyQuotaExceeded``."""
        record = self.lifecycle.ensure_current(uid)
        if record.plan == SubscriptionPlan.PLUS:
            return ChatAllowance(plan=record.plan, remaining_messages=None)

        seen: dict[str, SubscriptionRecord] = {}
        now = self.lifecycle.clock()
        limit = self.lifecycle.daily_limit

        def _spend(doc: UserDocument | None) -> Patch | None:
            if doc is None:
                raise RecordNotFound(user_id=uid)
            current = SubscriptionRecord.from_document(uid, doc.data)
            seen["record"] = current
            return quota_patch(current, now, limit)

        try:
            patch = self.lifecycle.store.update_in_transaction(uid, _spend)
        except DailyQuotaExceeded:
            metrics.quota_rejected()
            logger.info("User %s hit the daily message limit", uid)
            raise

        current = seen["record"]
        if patch is None:
            # Upgraded between the expiry check and the transaction
            return ChatAllowance(plan=current.plan, remaining_messages=None)
        return ChatAllowance(plan=current.plan, remaining_messages=patch[Field.REMAINING_MESSAGES])
