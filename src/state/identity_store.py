from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from .kv_store import KeyValueStore, KeyValueStoreError
from .models import Identity


logger = logging.getLogger(__name__)

IDENTITY_KEY = "circle_user_id"


class IdentityStore:
    """
    Persists the single stored user identifier.

    Storage failures never propagate: an unreadable store loads as "no
    identity" so onboarding falls back to a fresh start, and failed writes are
    logged.
    """

    def __init__(self, store: KeyValueStore, *, key: str = IDENTITY_KEY) -> None:
        self._store = store
        self._key = key

    def load(self) -> Optional[Identity]:
        try:
            raw = self._store.get(self._key)
        except KeyValueStoreError as exc:
            logger.warning("Identity store unavailable, treating as absent: %s", exc)
            return None
        if not raw:
            return None
        try:
            return Identity(user_id=raw)
        except ValidationError:
            return None

    def save(self, identity: Identity) -> None:
        try:
            self._store.set(self._key, identity.user_id)
        except KeyValueStoreError as exc:
            logger.warning("Failed to persist identity: %s", exc)

    def clear(self) -> None:
        try:
            self._store.remove(self._key)
        except KeyValueStoreError as exc:
            logger.warning("Failed to clear stored identity: %s", exc)
