from __future__ import annotations

import logging
from dataclasses import dataclass

import firebase_admin
from firebase_admin import auth as firebase_auth

from app.core.exceptions import Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    uid: str
    email: str | None = None


def parse_bearer(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated("missing_token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthenticated("missing_token")
    return token


class IdentityVerifier:
    """Validates Firebase ID tokens."""

    def __init__(self, app: firebase_admin.App, check_revoked: bool = False):
        self.app = app
        self.check_revoked = check_revoked

    def verify(self, token: str) -> Identity:
        try:
            claims = firebase_auth.verify_id_token(token, app=self.app, check_revoked=self.check_revoked)
        except firebase_auth.ExpiredIdTokenError as exc:
            raise Unauthenticated("expired_token") from exc
        except firebase_auth.RevokedIdTokenError as exc:
            raise Unauthenticated("revoked_token") from exc
        except (firebase_auth.InvalidIdTokenError, firebase_auth.UserDisabledError, ValueError) as exc:
            logger.info("Rejected ID token: %s", exc)
            raise Unauthenticated("invalid_token") from exc
        except firebase_auth.CertificateFetchError as exc:
            # Google key endpoint unreachable; still a credential we cannot accept
            logger.error("Could not fetch Firebase signing certificates: %s", exc)
            raise Unauthenticated("invalid_token") from exc
        return Identity(uid=claims["uid"], email=claims.get("email"))
