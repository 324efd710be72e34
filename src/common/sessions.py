from __future__ import annotations

import logging
from typing import Tuple
from uuid import uuid4

from state.models import Identity

from .backend import Session, WalletBackendClient
from .errors import BackendError, StaleIdentityError


logger = logging.getLogger(__name__)


def new_user_id() -> str:
    return f"user_{uuid4()}"


class SessionManager:
    """Exchanges user identifiers for sessions and reads the PIN-setup flag."""

    def __init__(self, backend: WalletBackendClient) -> None:
        self._backend = backend

    async def create_identity(self) -> Tuple[Identity, Session]:
        """
        Register a freshly generated identifier with the backend.

        Raises BackendError if registration is rejected; a duplicate id is
        reported, never silently retried with another one.
        """
        identity = Identity(user_id=new_user_id())
        session = await self._backend.create_user(identity.user_id)
        logger.info("Registered new user %s", identity.user_id)
        return identity, session

    async def resume_session(self, identity: Identity) -> Session:
        """
        Exchange an existing identifier for a fresh session.

        - HTTP 4xx: the backend no longer accepts the identity → StaleIdentityError.
        - Transport errors and 5xx propagate as BackendError.
        """
        try:
            return await self._backend.get_session_token(identity.user_id)
        except StaleIdentityError:
            raise
        except BackendError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500:
                raise StaleIdentityError(exc.message, status_code=exc.status_code) from exc
            raise

    async def has_pin_configured(self, identity: Identity) -> bool:
        """Return the backend's PIN flag; any failure reads as False."""
        try:
            return await self._backend.get_pin_status(identity.user_id)
        except BackendError as exc:
            logger.warning("PIN status check failed for %s, assuming no PIN: %s", identity.user_id, exc)
            return False
