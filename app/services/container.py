"""Process-wide service handles.

Built once by each entry point (API app, Celery worker, scripts) and handed
to the code that needs them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from app.core.config import BaseAppSettings, get_settings
from app.core.firebase import create_firebase_app
from app.core.security import Identity, IdentityVerifier
from app.db.user_store import FirestoreUserStore, UserStore
from app.services.chat_access import ChatAccessGate
from app.services.mercadopago_client import MercadoPagoClient
from app.services.subscription.lifecycle import Clock, SubscriptionLifecycleManager, utcnow

logger = logging.getLogger(__name__)


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Identity: ...


@dataclass
class Services:
    settings: BaseAppSettings
    store: UserStore
    gateway: MercadoPagoClient
    identity: TokenVerifier
    lifecycle: SubscriptionLifecycleManager
    chat_gate: ChatAccessGate

    def close(self) -> None:
        self.gateway.close()


def build_gateway(settings: BaseAppSettings) -> MercadoPagoClient:
    return MercadoPagoClient(
        access_token=settings.MP_ACCESS_TOKEN,
        base_url=settings.MP_API_BASE,
        timeout=settings.MP_TIMEOUT_SECONDS,
        webhook_secret=settings.MP_WEBHOOK_SECRET,
    )


def build_services(
    settings: BaseAppSettings | None = None,
    *,
    store: UserStore | None = None,
    gateway: MercadoPagoClient | None = None,
    identity: TokenVerifier | None = None,
    clock: Clock = utcnow,
) -> Services:
    """Wire the lifecycle manager and its collaborators.

    Any collaborator passed in is used as is; Firebase is only initialised
    when the store or the identity verifier still has to be built.
    """
    settings = settings or get_settings()
    if store is None or identity is None:
        firebase_app = create_firebase_app(settings)
        store = store or FirestoreUserStore(firebase_app, settings.USERS_COLLECTION)
        identity = identity or IdentityVerifier(firebase_app)
    gateway = gateway or build_gateway(settings)
    lifecycle = SubscriptionLifecycleManager(
        store=store,
        gateway=gateway,
        clock=clock,
        daily_limit=settings.FREE_DAILY_MESSAGES,
        grace_fallback_days=settings.CANCEL_GRACE_FALLBACK_DAYS,
    )
    logger.info("Services ready (collection=%s, env=%s)", settings.USERS_COLLECTION, settings.ENV)
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        identity=identity,
        lifecycle=lifecycle,
        chat_gate=ChatAccessGate(lifecycle),
    )
