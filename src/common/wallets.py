from __future__ import annotations

import logging
from typing import Tuple

from .backend import Wallet, WalletBackendClient


logger = logging.getLogger(__name__)


class WalletRegistry:
    """
    Holds the user's wallets as last reported by the backend.

    Each successful fetch replaces the whole collection in server order. A
    failed fetch leaves the previous collection untouched and re-raises.
    """

    def __init__(self, backend: WalletBackendClient) -> None:
        self._backend = backend
        self._wallets: Tuple[Wallet, ...] = ()

    @property
    def wallets(self) -> Tuple[Wallet, ...]:
        return self._wallets

    async def fetch(self, user_id: str) -> Tuple[Wallet, ...]:
        fetched = tuple(await self._backend.list_wallets(user_id))
        self._wallets = fetched
        logger.info("Loaded %d wallet(s) for %s", len(fetched), user_id)
        return fetched

    def reset(self) -> None:
        self._wallets = ()
