import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `state.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


def wallet_payload(wallet_id: str, user_id: str = "user_123", blockchain: str = "ETH-SEPOLIA") -> Dict[str, Any]:
    return {
        "id": wallet_id,
        "state": "LIVE",
        "walletSetId": "ws-1",
        "custodyType": "ENDUSER",
        "userId": user_id,
        "address": f"0x{wallet_id}",
        "blockchain": blockchain,
        "accountType": "SCA",
        "createDate": "2024-09-03T10:00:00Z",
        "updateDate": "2024-09-03T10:00:00Z",
    }


class FakeWalletApi:
    """In-memory stand-in for the onboarding backend, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.known_users: set[str] = set()
        self.pin_enabled = False
        self.wallets: List[Dict[str, Any]] = []
        self.fail: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self.pin_challenge_id = "chal_1"
        self.wallet_challenge_id = "chal_2"
        self.wallet_id = "wallet_1"

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.calls if p == path)

    def handler(self, request):
        import httpx

        path = request.url.path
        self.calls.append((request.method, path))
        if path in self.fail:
            status, body = self.fail[path]
            return httpx.Response(status, json=body)

        body = json.loads(request.content) if request.content else {}
        if path == "/api/users/create":
            uid = body["userId"]
            self.known_users.add(uid)
            return httpx.Response(201, json={"userToken": f"tok-{uid}", "encryptionKey": "enc-key"})
        if path == "/api/users/token":
            uid = body["userId"]
            if uid not in self.known_users:
                return httpx.Response(404, json={"error": "User not found"})
            return httpx.Response(200, json={"userToken": f"tok-{uid}", "encryptionKey": "enc-key"})
        if path == "/api/users/status":
            return httpx.Response(200, json={"hasPinEnabled": self.pin_enabled})
        if path == "/api/users/pin/challenge":
            return httpx.Response(200, json={"challengeId": self.pin_challenge_id})
        if path == "/api/wallet/create":
            return httpx.Response(200, json={"challengeId": self.wallet_challenge_id, "walletId": self.wallet_id})
        if path == "/api/wallet/list":
            return httpx.Response(200, json={"wallets": list(self.wallets)})
        return httpx.Response(404, json={"error": "Not found"})

    def client(self):
        import httpx

        from common.backend import WalletBackendClient

        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url="http://test")
        return WalletBackendClient(client=http)


class FakeExecutor:
    """Secure-widget stand-in: replays planned statuses, repeating the last one."""

    def __init__(self, statuses=("COMPLETE",), *, error: Optional[Exception] = None) -> None:
        self.plan = list(statuses)
        self.error = error
        self.calls: List[str] = []
        self.sessions: List[Any] = []

    async def execute(self, challenge_id: str, *, session):
        from common.challenges import ChallengeOutcome

        self.calls.append(challenge_id)
        self.sessions.append(session)
        if self.error is not None:
            raise self.error
        status = self.plan.pop(0) if len(self.plan) > 1 else self.plan[0]
        return ChallengeOutcome(type="SET_PIN", status=status)


@pytest.fixture
def api() -> FakeWalletApi:
    return FakeWalletApi()


@pytest.fixture
def kv(tmp_path):
    from state.kv_store import JsonFileStore

    return JsonFileStore(tmp_path / "identity.json")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture
def make_machine(api, kv, fake_sleep):
    from common.challenges import ChallengePoller
    from common.sessions import SessionManager
    from common.wallets import WalletRegistry
    from onboarding.machine import OnboardingStateMachine
    from state.identity_store import IdentityStore

    def _make(executor=None, *, store=None):
        backend = api.client()
        return OnboardingStateMachine(
            identity_store=IdentityStore(store or kv),
            sessions=SessionManager(backend),
            backend=backend,
            poller=ChallengePoller(interval=2.0, sleep=fake_sleep),
            wallets=WalletRegistry(backend),
            executor=executor,
        )

    return _make
