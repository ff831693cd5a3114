"""Firebase Admin app construction.

The app handle is built by the process entry point and passed down to the
identity verifier and the user store; nothing here caches global state.
"""
from __future__ import annotations

import json
import logging

import firebase_admin
from firebase_admin import credentials

from app.core.config import BaseAppSettings
from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _load_credential(settings: BaseAppSettings) -> credentials.Base:
    raw = (settings.FIREBASE_SERVICE_ACCOUNT or "").strip()
    if not raw:
        # Cloud Run / Functions style deployments authenticate via metadata server
        logger.info("FIREBASE_SERVICE_ACCOUNT not set; using application default credentials")
        return credentials.ApplicationDefault()
    try:
        service_account = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("FIREBASE_SERVICE_ACCOUNT is not valid JSON: %s", exc.msg)
        raise ConfigurationError("FIREBASE_SERVICE_ACCOUNT") from exc
    # Env files frequently carry the private key with escaped newlines
    key = service_account.get("private_key")
    if isinstance(key, str):
        service_account["private_key"] = key.replace("\\n", "\n")
    return credentials.Certificate(service_account)


def create_firebase_app(settings: BaseAppSettings, name: str = firebase_admin._DEFAULT_APP_NAME) -> firebase_admin.App:
    """Initialise (or reuse) the named Firebase Admin app."""
    try:
        return firebase_admin.get_app(name)
    except ValueError:
        pass
    options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
    app = firebase_admin.initialize_app(_load_credential(settings), options=options, name=name)
    logger.info("Firebase Admin initialised project=%s", app.project_id)
    return app
