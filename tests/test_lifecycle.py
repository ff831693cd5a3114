"""Tests for SubscriptionLifecycleManager against the in-memory store and fake Mercado Pago."""
import datetime as dt

import pytest
from google.api_core.exceptions import DeadlineExceeded

from app.core.exceptions import GatewayError, NoActiveSubscription, RecordNotFound, SubscriptionNotFound
from app.models.models import Field
from app.services.subscription import WebhookEvent, WebhookOutcome


def _assert_invariants(data: dict) -> None:
    assert data[Field.IS_PLUS] == (data[Field.PLAN] == "plus")
    if data.get(Field.SUBSCRIPTION_STATUS) == "cancelled":
        assert data[Field.PLAN] in ("plus", "free", "cancelled")


def _seed_plus(store, uid="u1", agreement="A1", **extra):
    store.seed(
        uid,
        email=f"{uid}@example.com",
        plan="plus",
        isPlus=True,
        externalAgreementId=agreement,
        remainingMessages=10,
        **extra,
    )


# ── ensure_record ──────────────────────────────────────────────────────

def test_ensure_record_creates_free_user(lifecycle, store, clock):
    record = lifecycle.ensure_record("u1", "u1@example.com")
    data = store.data("u1")
    assert record.plan.value == "free"
    assert data[Field.PLAN] == "free"
    assert data[Field.IS_PLUS] is False
    assert data[Field.REMAINING_MESSAGES] == 10
    assert data[Field.CREATED_AT] == clock.now
    assert data[Field.EMAIL] == "u1@example.com"


def test_ensure_record_keeps_existing_and_backfills_email(lifecycle, store):
    _seed_plus(store)
    store.docs["u1"].pop(Field.EMAIL)
    record = lifecycle.ensure_record("u1", "late@example.com")
    assert record.plan.value == "plus"
    assert store.data("u1")[Field.EMAIL] == "late@example.com"
    assert store.data("u1")[Field.EXTERNAL_AGREEMENT_ID] == "A1"


# ── activate ───────────────────────────────────────────────────────────

def test_activate_moves_free_user_to_plus(lifecycle, store, clock):
    lifecycle.ensure_record("u1", "u1@example.com")
    assert lifecycle.activate("u1", "A1") is True
    data = store.data("u1")
    assert data[Field.PLAN] == "plus"
    assert data[Field.EXTERNAL_AGREEMENT_ID] == "A1"
    assert data[Field.UPGRADED_AT] == clock.now
    assert Field.SUBSCRIPTION_STATUS not in data
    _assert_invariants(data)


def test_activate_twice_with_same_agreement_is_noop(lifecycle, store, clock):
    lifecycle.ensure_record("u1", "u1@example.com")
    lifecycle.activate("u1", "A1")
    first_upgrade = store.data("u1")[Field.UPGRADED_AT]
    writes = store.writes

    clock.advance(hours=3)
    assert lifecycle.activate("u1", "A1") is False
    assert store.writes == writes
    assert store.data("u1")[Field.UPGRADED_AT] == first_upgrade


def test_activate_unknown_user_raises(lifecycle):
    with pytest.raises(RecordNotFound):
        lifecycle.activate("ghost", "A1")


def test_new_agreement_cancels_the_replaced_one(lifecycle, store, mp):
    lifecycle.ensure_record("u1", "u1@example.com")
    mp.add("A1")
    mp.add("A2")
    lifecycle.activate("u1", "A1")

    assert lifecycle.activate("u1", "A2") is True
    lifecycle.cancel("u1")

    assert mp.preapprovals["A1"]["status"] == "cancelled"
    assert mp.preapprovals["A2"]["status"] == "cancelled"
    assert store.data("u1")[Field.EXTERNAL_AGREEMENT_ID] == "A2"


def test_replacing_agreement_keeps_record_when_gateway_fails(lifecycle, store, mp):
    _seed_plus(store)
    mp.add("A1")
    mp.fail_status = 503

    with pytest.raises(GatewayError):
        lifecycle.activate("u1", "A2")

    assert store.data("u1")[Field.EXTERNAL_AGREEMENT_ID] == "A1"


def test_replacing_cancelled_agreement_needs_no_gateway_call(lifecycle, store, mp, clock):
    _seed_plus(store, subscriptionStatus="cancelled", expiresAt=clock.now + dt.timedelta(days=3))
    assert lifecycle.activate("u1", "A2") is True
    assert mp.requests == []
    assert store.data("u1")[Field.EXTERNAL_AGREEMENT_ID] == "A2"


# ── cancel ─────────────────────────────────────────────────────────────

def test_cancel_keeps_plus_until_next_payment(lifecycle, store, mp, clock):
    _seed_plus(store)
    next_payment = clock.now + dt.timedelta(days=30)
    mp.add("A1", next_payment_date=next_payment.isoformat())

    record = lifecycle.cancel("u1")

    data = store.data("u1")
    assert data[Field.PLAN] == "plus"
    assert data[Field.IS_PLUS] is True
    assert data[Field.SUBSCRIPTION_STATUS] == "cancelled"
    assert data[Field.CANCELLED_AT] == clock.now
    assert data[Field.EXPIRES_AT] == next_payment
    assert record.expires_at == next_payment
    assert mp.preapprovals["A1"]["status"] == "cancelled"
    _assert_invariants(data)


def test_cancel_without_gateway_date_uses_grace_period(lifecycle, store, mp, clock):
    _seed_plus(store)
    mp.add("A1")
    lifecycle.cancel("u1")
    assert store.data("u1")[Field.EXPIRES_AT] == clock.now + dt.timedelta(days=30)


def test_cancel_skips_gateway_update_when_already_cancelled_there(lifecycle, store, mp):
    _seed_plus(store)
    mp.add("A1", status="cancelled")
    lifecycle.cancel("u1")
    assert mp.calls("PUT") == []
    assert store.data("u1")[Field.SUBSCRIPTION_STATUS] == "cancelled"


def test_cancel_twice_succeeds_without_second_gateway_call(lifecycle, store, mp, clock):
    _seed_plus(store)
    mp.add("A1", next_payment_date=(clock.now + dt.timedelta(days=10)).isoformat())
    lifecycle.cancel("u1")
    requests_after_first = len(mp.requests)
    writes = store.writes

    record = lifecycle.cancel("u1")

    assert record.is_cancelled
    assert len(mp.requests) == requests_after_first
    assert store.writes == writes


def test_cancel_never_clears_existing_expiry(lifecycle, store, mp, clock):
    stored = clock.now + dt.timedelta(days=7)
    _seed_plus(store, expiresAt=stored)
    mp.add("A1")
    lifecycle.cancel("u1")
    assert store.data("u1")[Field.EXPIRES_AT] == stored


def test_cancel_without_agreement_raises_no_active_subscription(lifecycle, store):
    lifecycle.ensure_record("u1", "u1@example.com")
    with pytest.raises(NoActiveSubscription) as exc_info:
        lifecycle.cancel("u1")
    assert exc_info.value.status_code == 400


def test_cancel_missing_record_raises_no_active_subscription(lifecycle):
    with pytest.raises(NoActiveSubscription):
        lifecycle.cancel("ghost")


def test_cancel_unknown_agreement_at_gateway(lifecycle, store):
    _seed_plus(store, agreement="A404")
    before = dict(store.data("u1"))
    with pytest.raises(SubscriptionNotFound):
        lifecycle.cancel("u1")
    assert store.data("u1") == before


@pytest.mark.parametrize("failure", ["offline", "500"])
def test_cancel_gateway_failure_leaves_record_untouched(lifecycle, store, mp, failure):
    _seed_plus(store)
    mp.add("A1")
    if failure == "offline":
        mp.offline = True
    else:
        mp.fail_status = 500
    before = dict(store.data("u1"))

    with pytest.raises(GatewayError) as exc_info:
        lifecycle.cancel("u1")

    assert exc_info.value.status_code == 502
    assert store.data("u1") == before


# ── sweep_expired ──────────────────────────────────────────────────────

def test_sweep_converts_expired_plus_and_is_idempotent(lifecycle, store, clock):
    _seed_plus(store, subscriptionStatus="cancelled", expiresAt=clock.now - dt.timedelta(hours=1))

    result = lifecycle.sweep_expired()

    assert result.converted == 1
    data = store.data("u1")
    assert data[Field.PLAN] == "free"
    assert data[Field.IS_PLUS] is False
    assert data[Field.PREVIOUS_PLAN] == "plus"
    assert data[Field.DOWNGRADED_AT] == clock.now
    assert data[Field.REMAINING_MESSAGES] == 10
    _assert_invariants(data)

    writes = store.writes
    assert lifecycle.sweep_expired().converted == 0
    assert store.writes == writes


def test_sweep_leaves_unexpired_and_free_users_alone(lifecycle, store, clock):
    _seed_plus(store, uid="active", expiresAt=clock.now + dt.timedelta(days=3))
    _seed_plus(store, uid="open-ended")
    store.seed("free", plan="free", isPlus=False, expiresAt=clock.now - dt.timedelta(days=3))

    assert lifecycle.sweep_expired().converted == 0
    assert store.data("active")[Field.PLAN] == "plus"
    assert store.data("open-ended")[Field.PLAN] == "plus"


def test_sweep_dry_run_reports_without_writing(lifecycle, store, clock):
    _seed_plus(store, expiresAt=clock.now - dt.timedelta(days=1))
    writes = store.writes
    result = lifecycle.sweep_expired(dry_run=True)
    assert result.candidates == ["u1"]
    assert result.converted == 0
    assert store.writes == writes
    assert store.data("u1")[Field.PLAN] == "plus"


def test_sweep_continues_after_per_user_failure(lifecycle, store, clock):
    expired = clock.now - dt.timedelta(minutes=5)
    _seed_plus(store, uid="broken", expiresAt=expired)
    _seed_plus(store, uid="fine", expiresAt=expired)
    store.broken_uids.add("broken")

    result = lifecycle.sweep_expired()

    assert result.failed == 1
    assert result.converted == 1
    assert store.data("fine")[Field.PLAN] == "free"
    assert store.data("broken")[Field.PLAN] == "plus"


def test_sweep_skips_record_changed_since_read(lifecycle, store, clock, monkeypatch):
    _seed_plus(store, expiresAt=clock.now - dt.timedelta(minutes=5))
    original_iter = store.iter_expired_plus

    def iter_then_reactivate(now):
        for doc in original_iter(now):
            # Concurrent activation lands between the query and the write
            store.merge(doc.uid, {Field.EXTERNAL_AGREEMENT_ID: "A2", Field.EXPIRES_AT: None})
            yield doc

    monkeypatch.setattr(store, "iter_expired_plus", iter_then_reactivate)
    result = lifecycle.sweep_expired()

    assert result.converted == 0
    assert result.skipped == 1
    assert store.data("u1")[Field.PLAN] == "plus"


def test_sweep_returns_partial_result_when_query_stream_breaks(lifecycle, store, clock, monkeypatch):
    _seed_plus(store, expiresAt=clock.now - dt.timedelta(minutes=5))
    original_iter = store.iter_expired_plus

    def iter_then_fail(now):
        yield from original_iter(now)
        raise DeadlineExceeded("stream timed out")

    monkeypatch.setattr(store, "iter_expired_plus", iter_then_fail)
    result = lifecycle.sweep_expired()

    assert result.interrupted is True
    assert result.converted == 1
    assert result.as_dict()["interrupted"] is True
    assert store.data("u1")[Field.PLAN] == "free"


# ── ensure_current ─────────────────────────────────────────────────────

def test_ensure_current_converts_expired_user(lifecycle, store, clock):
    _seed_plus(store, expiresAt=clock.now - dt.timedelta(seconds=1))
    record = lifecycle.ensure_current("u1")
    assert record.plan.value == "free"
    assert store.data("u1")[Field.PLAN] == "free"
    _assert_invariants(store.data("u1"))


def test_ensure_current_leaves_active_plus(lifecycle, store, clock):
    _seed_plus(store, expiresAt=clock.now + dt.timedelta(days=1))
    writes = store.writes
    assert lifecycle.ensure_current("u1").plan.value == "plus"
    assert store.writes == writes


# ── webhook ────────────────────────────────────────────────────────────

def test_webhook_authorized_activates_by_email(lifecycle, store):
    lifecycle.ensure_record("u1", "buyer@example.com")
    event = WebhookEvent.from_payload(
        {"type": "preapproval", "data": {"id": "A1", "payer_email": "buyer@example.com", "status": "authorized"}}
    )
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.ACTIVATED
    assert store.data("u1")[Field.PLAN] == "plus"
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.DUPLICATE


def test_webhook_unknown_email_leaves_store_untouched(lifecycle, store):
    lifecycle.ensure_record("u1", "someone@example.com")
    snapshot = {uid: dict(data) for uid, data in store.docs.items()}
    writes = store.writes
    event = WebhookEvent.from_payload(
        {"type": "preapproval", "data": {"id": "A1", "payer_email": "nobody@example.com", "status": "authorized"}}
    )
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.USER_NOT_FOUND
    assert store.writes == writes
    assert store.docs == snapshot


def test_webhook_fetches_missing_fields_from_gateway(lifecycle, store, mp):
    lifecycle.ensure_record("u1", "u1@example.com")
    mp.add("A1", status="authorized", external_reference="u1", payer_email="other@example.com")
    event = WebhookEvent.from_payload({"type": "subscription_preapproval", "data": {"id": "A1"}})
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.ACTIVATED
    assert store.data("u1")[Field.EXTERNAL_AGREEMENT_ID] == "A1"


def test_webhook_gateway_failure_propagates(lifecycle, store, mp):
    lifecycle.ensure_record("u1", "u1@example.com")
    mp.fail_status = 503
    event = WebhookEvent.from_payload({"type": "preapproval", "data": {"id": "A1"}})
    with pytest.raises(GatewayError):
        lifecycle.activate_from_webhook(event)
    assert store.data("u1")[Field.PLAN] == "free"


def test_webhook_pending_status_is_ignored(lifecycle, store):
    lifecycle.ensure_record("u1", "u1@example.com")
    event = WebhookEvent.from_payload(
        {"type": "preapproval", "data": {"id": "A1", "payer_email": "u1@example.com", "status": "pending"}}
    )
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.IGNORED
    assert store.data("u1")[Field.PLAN] == "free"


def test_webhook_cancelled_status_records_gateway_cancellation(lifecycle, store, mp, clock):
    _seed_plus(store)
    event = WebhookEvent.from_payload(
        {"type": "preapproval", "data": {"id": "A1", "external_reference": "u1", "status": "cancelled"}}
    )
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.CANCELLED
    data = store.data("u1")
    assert data[Field.SUBSCRIPTION_STATUS] == "cancelled"
    assert data[Field.PLAN] == "plus"
    assert data[Field.EXPIRES_AT] == clock.now + dt.timedelta(days=30)
    assert mp.requests == []


def test_webhook_cancellation_of_replaced_agreement_is_ignored(lifecycle, store):
    _seed_plus(store, agreement="A2")
    event = WebhookEvent.from_payload(
        {"type": "preapproval", "data": {"id": "A1", "external_reference": "u1", "status": "cancelled"}}
    )
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.IGNORED
    assert Field.SUBSCRIPTION_STATUS not in store.data("u1")


def test_webhook_approved_payment_activates_via_search(lifecycle, store, mp):
    lifecycle.ensure_record("u1", "u1@example.com")
    mp.add("A7", status="authorized", external_reference="u1")
    event = WebhookEvent.from_payload(
        {"type": "payment", "data": {"id": "999", "status": "approved", "external_reference": "u1"}}
    )
    assert lifecycle.activate_from_webhook(event) == WebhookOutcome.ACTIVATED
    assert store.data("u1")[Field.EXTERNAL_AGREEMENT_ID] == "A7"


# ── end to end ─────────────────────────────────────────────────────────

def test_free_activate_cancel_sweep_scenario(lifecycle, store, mp, clock):
    t0 = clock.now
    lifecycle.ensure_record("u1", "u1@example.com")

    lifecycle.activate("u1", "A1")
    data = store.data("u1")
    assert (data[Field.PLAN], data[Field.IS_PLUS]) == ("plus", True)
    assert Field.SUBSCRIPTION_STATUS not in data

    mp.add("A1", next_payment_date=(t0 + dt.timedelta(days=30)).isoformat())
    lifecycle.cancel("u1")
    data = store.data("u1")
    assert (data[Field.PLAN], data[Field.IS_PLUS]) == ("plus", True)
    assert data[Field.SUBSCRIPTION_STATUS] == "cancelled"
    assert data[Field.EXPIRES_AT] == t0 + dt.timedelta(days=30)

    clock.advance(days=31)
    assert lifecycle.sweep_expired().converted == 1
    data = store.data("u1")
    assert (data[Field.PLAN], data[Field.IS_PLUS]) == ("free", False)
    assert data[Field.PREVIOUS_PLAN] == "plus"
    assert data[Field.REMAINING_MESSAGES] == 10
    _assert_invariants(data)
