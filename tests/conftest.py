from __future__ import annotations

import copy
import datetime as dt
import json
import os
from typing import Any, Iterator

# Must be set before app.core.config is first imported
os.environ.setdefault("APP_ENV", "test")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.api.main import create_app  # noqa: E402
from app.core.config import TestSettings  # noqa: E402
from app.core.exceptions import StaleRecordError, Unauthenticated  # noqa: E402
from app.core.security import Identity  # noqa: E402
from app.db.user_store import Mutation, UserDocument, UserStore  # noqa: E402
from app.models.models import Field, Patch, apply_patch, as_utc  # noqa: E402
from app.services.container import build_services  # noqa: E402
from app.services.mercadopago_client import MercadoPagoClient  # noqa: E402

T0 = dt.datetime(2025, 3, 1, 12, 0, tzinfo=dt.timezone.utc)
MP_BASE_URL = "https://api.mercadopago.test"


class InMemoryUserStore(UserStore):
    """Dict-backed store with an integer version per document."""

    def __init__(self):
        self.docs: dict[str, dict[str, Any]] = {}
        self.versions: dict[str, int] = {}
        self.writes = 0
        self.broken_uids: set[str] = set()

    def seed(self, uid: str, **fields: Any) -> None:
        self.docs[uid] = {Field.UID: uid, **fields}
        self.versions[uid] = self.versions.get(uid, 0) + 1

    def data(self, uid: str) -> dict[str, Any]:
        return self.docs[uid]

    def get(self, uid: str) -> UserDocument | None:
        if uid not in self.docs:
            return None
        return UserDocument(uid=uid, data=copy.deepcopy(self.docs[uid]), version=self.versions[uid])

    def find_by_email(self, email: str) -> UserDocument | None:
        for uid, data in self.docs.items():
            if data.get(Field.EMAIL) == email:
                return self.get(uid)
        return None

    def create_if_absent(self, uid: str, data: Patch) -> bool:
        if uid in self.docs:
            return False
        self.docs[uid] = apply_patch({}, data)
        self.versions[uid] = 1
        self.writes += 1
        return True

    def merge(self, uid: str, patch: Patch, *, if_unchanged_since: Any = None) -> None:
        if uid in self.broken_uids:
            raise RuntimeError(f"simulated write failure for {uid}")
        if if_unchanged_since is not None and self.versions.get(uid) != if_unchanged_since:
            raise StaleRecordError(uid)
        self.docs[uid] = apply_patch(self.docs.get(uid, {}), patch)
        self.versions[uid] = self.versions.get(uid, 0) + 1
        self.writes += 1

    def update_in_transaction(self, uid: str, mutate: Mutation) -> Patch | None:
        patch = mutate(self.get(uid))
        if patch:
            self.merge(uid, patch)
        return patch

    def iter_expired_plus(self, now: dt.datetime) -> Iterator[UserDocument]:
        matches = [
            uid for uid, data in self.docs.items()
            if data.get(Field.PLAN) == "plus"
            and data.get(Field.EXPIRES_AT) is not None
            and as_utc(data[Field.EXPIRES_AT]) <= now
        ]
        for uid in matches:
            yield self.get(uid)


class FakeMercadoPago:
    """Serves the preapproval endpoints through ``httpx.MockTransport``."""

    def __init__(self):
        self.preapprovals: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None
        self.offline = False

    def add(self, preapproval_id: str, **fields: Any) -> dict[str, Any]:
        item = {"id": preapproval_id, "status": "authorized", **fields}
        self.preapprovals[preapproval_id] = item
        return item

    def calls(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"message": "internal_error"})

        path = request.url.path
        if request.method == "POST" and path == "/preapproval":
            body = json.loads(request.content)
            preapproval_id = f"pre-{len(self.preapprovals) + 1}"
            item = {
                "id": preapproval_id,
                "status": "pending",
                "init_point": f"https://www.mercadopago.test/subscriptions/checkout?preapproval_id={preapproval_id}",
                "payer_email": body["payer_email"],
                "external_reference": body["external_reference"],
                "reason": body["reason"],
                "auto_recurring": body["auto_recurring"],
            }
            self.preapprovals[preapproval_id] = item
            return httpx.Response(201, json=item)
        if request.method == "GET" and path == "/preapproval/search":
            reference = request.url.params.get("external_reference")
            results = [p for p in self.preapprovals.values() if p.get("external_reference") == reference]
            return httpx.Response(200, json={"results": results, "paging": {"total": len(results)}})
        if path.startswith("/preapproval/"):
            item = self.preapprovals.get(path.rsplit("/", 1)[1])
            if item is None:
                return httpx.Response(404, json={"message": "Preapproval not found"})
            if request.method == "PUT":
                item.update(json.loads(request.content))
            return httpx.Response(200, json=item)
        return httpx.Response(404, json={"message": "not found"})


class FakeIdentityVerifier:
    def __init__(self):
        self.tokens: dict[str, Identity] = {}

    def register(self, uid: str, email: str | None = None) -> dict[str, str]:
        token = f"token-{uid}"
        self.tokens[token] = Identity(uid=uid, email=email)
        return {"Authorization": f"Bearer {token}"}

    def verify(self, token: str) -> Identity:
        try:
            return self.tokens[token]
        except KeyError:
            raise Unauthenticated("invalid_token") from None


class FrozenClock:
    def __init__(self, now: dt.datetime = T0):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


@pytest.fixture
def test_settings():
    return TestSettings()


@pytest.fixture
def store():
    return InMemoryUserStore()


@pytest.fixture
def mp():
    return FakeMercadoPago()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def identity_verifier():
    return FakeIdentityVerifier()


@pytest.fixture
def gateway(mp, test_settings):
    client = MercadoPagoClient(
        access_token="TEST-mp-access-token",
        base_url=MP_BASE_URL,
        timeout=test_settings.MP_TIMEOUT_SECONDS,
        webhook_secret=test_settings.MP_WEBHOOK_SECRET,
        transport=httpx.MockTransport(mp.handler),
    )
    yield client
    client.close()


@pytest.fixture
def services(test_settings, store, gateway, identity_verifier, clock):
    return build_services(
        test_settings,
        store=store,
        gateway=gateway,
        identity=identity_verifier,
        clock=clock,
    )


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def client(services):
    """FastAPI TestClient bound to an app wired with the in-memory fakes."""
    with TestClient(create_app(services)) as test_client:
        yield test_client
