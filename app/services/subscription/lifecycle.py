"""Subscription lifecycle manager.

Three independent entry points drive the same record: the user (activate,
cancel), Mercado Pago webhooks and the scheduled expiration sweep. Each
operation reads the record, asks ``transitions`` for the next state and
merge-writes the result.

Writes from ``activate`` and ``cancel`` are last-writer-wins. The sweep and
the inline expiry check write conditionally on the version they read and
skip the user when the record moved underneath them.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from google.api_core import exceptions as gcloud_exceptions

from app import metrics
from app.core.exceptions import NoActiveSubscription, RecordNotFound, StaleRecordError, SubscriptionNotFound
from app.db.user_store import UserDocument, UserStore
from app.models.models import (
    FREE_DAILY_MESSAGES,
    Field,
    SubscriptionPlan,
    SubscriptionRecord,
    apply_patch,
    as_utc,
    new_user_document,
)
from app.services.mercadopago_client import STATUS_AUTHORIZED, STATUS_CANCELLED, MercadoPagoClient

from .transitions import activation_patch, cancellation_patch, expiration_patch

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

PREAPPROVAL_EVENT_TYPES = {"preapproval", "subscription_preapproval"}
PAYMENT_EVENT_TYPES = {"payment"}


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse_date(value: Any) -> dt.datetime | None:
    try:
        return as_utc(value) if value else None
    except (TypeError, ValueError):
        return None


class WebhookOutcome:
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class WebhookEvent:
    """The parts of a Mercado Pago notification the lifecycle cares about."""
    type: str
    agreement_id: str | None = None
    payer_email: str | None = None
    status: str | None = None
    external_reference: str | None = None
    next_payment_date: dt.datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WebhookEvent:
        event_type = str(payload.get("type") or payload.get("topic") or "").lower()
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if event_type in PAYMENT_EVENT_TYPES:
            # Payment events name the agreement separately from their own id
            agreement_id = data.get("preapproval_id")
        else:
            agreement_id = data.get("id")
        return cls(
            type=event_type,
            agreement_id=str(agreement_id) if agreement_id else None,
            payer_email=data.get("payer_email") or None,
            status=(str(data["status"]).lower() if data.get("status") else None),
            external_reference=data.get("external_reference") or None,
            next_payment_date=_parse_date(data.get("next_payment_date")),
        )


@dataclass
class SweepResult:
    scanned: int = 0
    converted: int = 0
    skipped: int = 0
    failed: int = 0
    candidates: list[str] = field(default_factory=list)
    dry_run: bool = False
    interrupted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "converted": self.converted,
            "skipped": self.skipped,
            "failed": self.failed,
            "candidates": list(self.candidates),
            "dry_run": self.dry_run,
            "interrupted": self.interrupted,
        }


class SubscriptionLifecycleManager:
    def __init__(
        self,
        store: UserStore,
        gateway: MercadoPagoClient,
        clock: Clock = utcnow,
        daily_limit: int = FREE_DAILY_MESSAGES,
        grace_fallback_days: int = 30,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.daily_limit = daily_limit
        self.grace_fallback_days = grace_fallback_days

    def _now(self) -> dt.datetime:
        return self.clock()

    # ------------------------------------------------------------------
    # Record bootstrap
    # ------------------------------------------------------------------
    def ensure_record(self, uid: str, email: str | None = None) -> SubscriptionRecord:
        """Create the free-tier record on first sight of a user."""
        doc = self.store.get(uid)
        if doc is None:
            data = new_user_document(uid, email, self._now())
            data[Field.REMAINING_MESSAGES] = self.daily_limit
            if self.store.create_if_absent(uid, data):
                return SubscriptionRecord.from_document(uid, data)
            # Lost a creation race with a concurrent request
            doc = self.store.get(uid)
            if doc is None:
                raise RecordNotFound(user_id=uid)
        if email and not doc.data.get(Field.EMAIL):
            patch = {Field.EMAIL: email}
            self.store.merge(uid, patch)
            return SubscriptionRecord.from_document(uid, apply_patch(doc.data, patch))
        return SubscriptionRecord.from_document(uid, doc.data)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------
    def _retire_replaced_agreement(self, record: SubscriptionRecord, agreement_id: str) -> None:
        """Stop billing on the agreement a new one is about to replace.

        Raises ``GatewayError`` before anything is written, so the user keeps
        the old agreement on file rather than two live ones.
        """
        previous = record.external_agreement_id
        if not previous or previous == agreement_id:
            return
        if record.plan != SubscriptionPlan.PLUS or record.is_cancelled:
            return
        try:
            preapproval = self.gateway.get_preapproval(previous)
        except SubscriptionNotFound:
            logger.warning("Replaced agreement %s of user %s unknown to Mercado Pago", previous, record.uid)
            return
        if not preapproval.is_cancelled:
            self.gateway.cancel_preapproval(previous)
            metrics.subscription_cancelled("replaced")
        logger.info("User %s agreement %s replaced by %s", record.uid, previous, agreement_id)

    def _activate_document(self, doc: UserDocument, agreement_id: str, source: str) -> bool:
        record = SubscriptionRecord.from_document(doc.uid, doc.data)
        patch = activation_patch(record, agreement_id, self._now())
        if patch is None:
            logger.info("Agreement %s already recorded for user %s; activation skipped", agreement_id, doc.uid)
            metrics.subscription_activation_skipped(source)
            return False
        self._retire_replaced_agreement(record, agreement_id)
        self.store.merge(doc.uid, patch)
        metrics.subscription_activated(source)
        logger.info(
            "User %s upgraded to plus via %s (agreement=%s, previous plan=%s)",
            doc.uid, source, agreement_id, record.plan.value,
        )
        return True

    def activate(self, uid: str, agreement_id: str, source: str = "manual") -> bool:
        """Put the user on Plus under ``agreement_id``. Returns False for a no-op."""
        doc = self.store.get(uid)
        if doc is None:
            raise RecordNotFound(user_id=uid)
        return self._activate_document(doc, agreement_id, source)

    def _resolve_webhook_user(self, uid: str | None, email: str | None) -> UserDocument | None:
        if uid:
            doc = self.store.get(uid)
            if doc is not None:
                return doc
        if email:
            return self.store.find_by_email(email)
        return None

    def _agreement_for_payment(self, event: WebhookEvent) -> str | None:
        if event.agreement_id:
            return event.agreement_id
        for preapproval in self.gateway.search_preapprovals(event.external_reference):
            if preapproval.status == STATUS_AUTHORIZED:
                return preapproval.id
        return None

    def activate_from_webhook(self, event: WebhookEvent) -> str:
        """Apply a Mercado Pago notification.

        Unknown users are logged and dropped so the gateway stops retrying.
        ``GatewayError`` while enriching the event propagates so it does retry.
        """
        if event.type in PAYMENT_EVENT_TYPES:
            return self._apply_payment_event(event)
        if event.type not in PREAPPROVAL_EVENT_TYPES or not event.agreement_id:
            logger.info("Ignoring Mercado Pago event type=%s id=%s", event.type, event.agreement_id)
            return WebhookOutcome.IGNORED

        status, email, uid = event.status, event.payer_email, event.external_reference
        next_payment_date = event.next_payment_date
        if not status or not (email or uid):
            try:
                preapproval = self.gateway.get_preapproval(event.agreement_id)
            except SubscriptionNotFound:
                logger.warning("Webhook for unknown preapproval %s dropped", event.agreement_id)
                return WebhookOutcome.IGNORED
            status = status or preapproval.status
            email = email or preapproval.payer_email
            uid = uid or preapproval.external_reference
            next_payment_date = next_payment_date or preapproval.next_payment_date

        if status not in (STATUS_AUTHORIZED, STATUS_CANCELLED):
            logger.info("Preapproval %s status=%s needs no action", event.agreement_id, status)
            return WebhookOutcome.IGNORED

        doc = self._resolve_webhook_user(uid, email)
        if doc is None:
            logger.warning(
                "No user record for preapproval %s (uid=%s email=%s); event dropped",
                event.agreement_id, uid, email,
            )
            return WebhookOutcome.USER_NOT_FOUND

        if status == STATUS_AUTHORIZED:
            changed = self._activate_document(doc, event.agreement_id, "webhook")
            return WebhookOutcome.ACTIVATED if changed else WebhookOutcome.DUPLICATE
        return self._record_gateway_cancellation(doc, event.agreement_id, next_payment_date)

    def _apply_payment_event(self, event: WebhookEvent) -> str:
        if event.status != "approved" or not event.external_reference:
            logger.info("Ignoring payment event status=%s", event.status)
            return WebhookOutcome.IGNORED
        doc = self.store.get(event.external_reference)
        if doc is None:
            logger.warning("Approved payment for unknown user %s dropped", event.external_reference)
            return WebhookOutcome.USER_NOT_FOUND
        agreement_id = self._agreement_for_payment(event)
        if not agreement_id:
            logger.warning("Approved payment for user %s has no authorized preapproval", doc.uid)
            return WebhookOutcome.IGNORED
        changed = self._activate_document(doc, agreement_id, "webhook")
        return WebhookOutcome.ACTIVATED if changed else WebhookOutcome.DUPLICATE

    def _record_gateway_cancellation(
        self,
        doc: UserDocument,
        agreement_id: str,
        next_payment_date: dt.datetime | None,
    ) -> str:
        record = SubscriptionRecord.from_document(doc.uid, doc.data)
        if record.external_agreement_id != agreement_id:
            # Cancellation of an agreement the user has since replaced
            logger.info("Cancellation of stale agreement %s for user %s ignored", agreement_id, doc.uid)
            return WebhookOutcome.IGNORED
        patch = cancellation_patch(record, self._now(), next_payment_date, self.grace_fallback_days)
        if patch is None:
            return WebhookOutcome.DUPLICATE
        self.store.merge(doc.uid, patch)
        metrics.subscription_cancelled("webhook")
        logger.info("Agreement %s cancelled at gateway for user %s; access until %s",
                    agreement_id, doc.uid, patch[Field.EXPIRES_AT])
        return WebhookOutcome.CANCELLED

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel(self, uid: str) -> SubscriptionRecord:
        """Stop renewal of the user's agreement. Access lasts until ``expiresAt``.

        Raises:
            NoActiveSubscription: no record or no stored agreement
            SubscriptionNotFound: Mercado Pago does not know the agreement
            GatewayError: Mercado Pago failed; the record is left untouched
        """
        doc = self.store.get(uid)
        if doc is None:
            raise NoActiveSubscription(uid)
        record = SubscriptionRecord.from_document(uid, doc.data)
        if record.is_cancelled:
            logger.info("Subscription of user %s already cancelled", uid)
            return record
        agreement_id = record.external_agreement_id
        if not agreement_id:
            raise NoActiveSubscription(uid)

        preapproval = self.gateway.get_preapproval(agreement_id)
        next_payment_date = preapproval.next_payment_date
        if not preapproval.is_cancelled:
            updated = self.gateway.cancel_preapproval(agreement_id)
            next_payment_date = next_payment_date or updated.next_payment_date

        patch = cancellation_patch(record, self._now(), next_payment_date, self.grace_fallback_days)
        self.store.merge(uid, patch)
        metrics.subscription_cancelled("user")
        logger.info(
            "User %s cancelled agreement %s; keeps %s until %s",
            uid, agreement_id, record.plan.value, patch[Field.EXPIRES_AT],
        )
        return SubscriptionRecord.from_document(uid, apply_patch(doc.data, patch))

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------
    def sweep_expired(self, dry_run: bool = False) -> SweepResult:
        """Convert every expired Plus record back to free.

        Per-user failures are logged and counted; the scan goes on. A query
        stream that breaks mid-scan ends the run with the partial result
        marked ``interrupted``.
        """
        now = self._now()
        result = SweepResult(dry_run=dry_run)
        try:
            for doc in self.store.iter_expired_plus(now):
                result.scanned += 1
                self._expire_in_sweep(doc, now, result)
        except gcloud_exceptions.GoogleAPICallError as exc:
            result.interrupted = True
            metrics.sweep_failure()
            logger.error("Expiration sweep interrupted after %s users: %s", result.scanned, exc)

        logger.info(
            "Expiration sweep finished scanned=%s converted=%s skipped=%s failed=%s dry_run=%s interrupted=%s",
            result.scanned, result.converted, result.skipped, result.failed, dry_run, result.interrupted,
        )
        return result

    def _expire_in_sweep(self, doc: UserDocument, now: dt.datetime, result: SweepResult) -> None:
        try:
            record = SubscriptionRecord.from_document(doc.uid, doc.data)
            patch = expiration_patch(record, now, self.daily_limit)
            if patch is None:
                result.skipped += 1
                return
            if result.dry_run:
                result.candidates.append(doc.uid)
                return
            self.store.merge(doc.uid, patch, if_unchanged_since=doc.version)
        except StaleRecordError:
            result.skipped += 1
            logger.info("User %s changed during sweep; left for the next run", doc.uid)
            return
        except Exception as exc:  # noqa: BLE001
            result.failed += 1
            metrics.sweep_failure()
            logger.exception("Failed to expire subscription of user %s: %s", doc.uid, exc)
            return
        result.converted += 1
        metrics.subscription_expired("sweep")
        logger.info("User %s plus expired at %s; moved to free", doc.uid, record.expires_at)

    def ensure_current(self, uid: str) -> SubscriptionRecord:
        """Apply a due expiration for one user before serving them."""
        for _ in range(2):
            doc = self.store.get(uid)
            if doc is None:
                raise RecordNotFound(user_id=uid)
            record = SubscriptionRecord.from_document(uid, doc.data)
            now = self._now()
            patch = expiration_patch(record, now, self.daily_limit)
            if patch is None:
                return record
            try:
                self.store.merge(uid, patch, if_unchanged_since=doc.version)
            except StaleRecordError:
                logger.info("User %s changed during expiry check; re-reading", uid)
                continue
            metrics.subscription_expired("inline")
            logger.info("User %s plus expired at %s; moved to free", uid, record.expires_at)
            return SubscriptionRecord.from_document(uid, apply_patch(doc.data, patch))
        doc = self.store.get(uid)
        if doc is None:
            raise RecordNotFound(user_id=uid)
        return SubscriptionRecord.from_document(uid, doc.data)
