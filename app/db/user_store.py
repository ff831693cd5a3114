"""User record store backed by Cloud Firestore.

One document per user in ``settings.USERS_COLLECTION`` keyed by Firebase uid.
Writes use merge semantics so fields owned by other parts of the product
(profile, interview answers, avatar) are never clobbered.
"""
from __future__ import annotations

import datetime as dt
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import firebase_admin
from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from app.core.exceptions import StaleRecordError
from app.models.models import DELETE, Field, Patch, SubscriptionPlan

logger = logging.getLogger(__name__)


@dataclass
class UserDocument:
    uid: str
    data: dict[str, Any] = field(default_factory=dict)
    # Opaque version token used for conditional writes (Firestore update_time)
    version: Any = None


Mutation = Callable[[UserDocument | None], Patch | None]


class UserStore(ABC):
    """Persistence contract the subscription lifecycle depends on."""

    @abstractmethod
    def get(self, uid: str) -> UserDocument | None:
        """Fetch one user document, or None if it does not exist."""

    @abstractmethod
    def find_by_email(self, email: str) -> UserDocument | None:
        """First document whose ``email`` field matches exactly."""

    @abstractmethod
    def create_if_absent(self, uid: str, data: Patch) -> bool:
        """Create the document; returns False when it already existed."""

    @abstractmethod
    def merge(self, uid: str, patch: Patch, *, if_unchanged_since: Any = None) -> None:
        """Merge-write ``patch``.

        With ``if_unchanged_since`` the write only lands if the document still
        carries that version; otherwise ``StaleRecordError`` is raised.
        """

    @abstractmethod
    def update_in_transaction(self, uid: str, mutate: Mutation) -> Patch | None:
        """Read-modify-write in one transaction. ``mutate`` may raise to abort."""

    @abstractmethod
    def iter_expired_plus(self, now: dt.datetime) -> Iterator[UserDocument]:
        """Documents with plan == plus and expiresAt <= now."""

    def ping(self) -> bool:
        return True


def _to_firestore(patch: Patch) -> dict[str, Any]:
    return {k: (firestore.DELETE_FIELD if v is DELETE else v) for k, v in patch.items()}


def _document(snapshot: Any) -> UserDocument:
    return UserDocument(uid=snapshot.id, data=snapshot.to_dict() or {}, version=snapshot.update_time)


class FirestoreUserStore(UserStore):
    def __init__(self, app: firebase_admin.App, collection: str):
        self.client = firebase_firestore.client(app)
        self.collection_name = collection

    @property
    def collection(self):
        return self.client.collection(self.collection_name)

    def get(self, uid: str) -> UserDocument | None:
        snapshot = self.collection.document(uid).get()
        if not snapshot.exists:
            return None
        return _document(snapshot)

    def find_by_email(self, email: str) -> UserDocument | None:
        query = self.collection.where(filter=FieldFilter(Field.EMAIL, "==", email)).limit(1)
        for snapshot in query.stream():
            return _document(snapshot)
        return None

    def create_if_absent(self, uid: str, data: Patch) -> bool:
        try:
            self.collection.document(uid).create(_to_firestore(data))
        except gcloud_exceptions.Conflict:
            return False
        logger.info("Created user record uid=%s", uid)
        return True

    def merge(self, uid: str, patch: Patch, *, if_unchanged_since: Any = None) -> None:
        ref = self.collection.document(uid)
        if if_unchanged_since is None:
            ref.set(_to_firestore(patch), merge=True)
            return
        option = self.client.write_option(last_update_time=if_unchanged_since)
        try:
            ref.update(_to_firestore(patch), option=option)
        except (gcloud_exceptions.FailedPrecondition, gcloud_exceptions.NotFound) as exc:
            raise StaleRecordError(uid) from exc

    def update_in_transaction(self, uid: str, mutate: Mutation) -> Patch | None:
        ref = self.collection.document(uid)

        @firestore.transactional
        def _run(transaction: firestore.Transaction) -> Patch | None:
            snapshot = ref.get(transaction=transaction)
            current = _document(snapshot) if snapshot.exists else None
            patch = mutate(current)
            if patch:
                transaction.set(ref, _to_firestore(patch), merge=True)
            return patch

        return _run(self.client.transaction())

    def iter_expired_plus(self, now: dt.datetime) -> Iterator[UserDocument]:
        # Needs the (plan ASC, expiresAt ASC) composite index from firestore.indexes.json
        query = (
            self.collection
            .where(filter=FieldFilter(Field.PLAN, "==", SubscriptionPlan.PLUS.value))
            .where(filter=FieldFilter(Field.EXPIRES_AT, "<=", now))
        )
        for snapshot in query.stream():
            yield _document(snapshot)

    def ping(self) -> bool:
        try:
            next(iter(self.collection.limit(1).stream()), None)
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.warning("Firestore ping failed: %s", exc)
            return False
        return True
