from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import BackendError


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000"


class Session(BaseModel):
    """Short-lived authenticated context derived from an identity."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_token: str = Field(..., alias="userToken", min_length=1)
    encryption_key: str = Field(..., alias="encryptionKey")

    def __repr__(self) -> str:
        # Never leak credentials into logs or tracebacks
        return "Session(session_token=***, encryption_key=***)"

    __str__ = __repr__


class IssuedChallenge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    challenge_id: str = Field(..., alias="challengeId", min_length=1)
    wallet_id: Optional[str] = Field(default=None, alias="walletId")


class Wallet(BaseModel):
    """Read-only projection of a provisioned wallet."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    state: str
    wallet_set_id: str = Field(..., alias="walletSetId")
    custody_type: str = Field(..., alias="custodyType")
    user_id: str = Field(..., alias="userId")
    address: str
    blockchain: str
    account_type: str = Field(..., alias="accountType")
    create_date: str = Field(..., alias="createDate")
    update_date: str = Field(..., alias="updateDate")


class WalletBackendClient:
    """
    Async client for the wallet onboarding backend.

    Notes
    - JSON request/response bodies; errors carry `{"error": "..."}` which is
      surfaced verbatim when present.
    - No retries: every failure is reported once to the caller. The only
      automatic repetition in the workflow is challenge polling.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "WalletBackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --------------- Public API ---------------
    async def create_user(self, user_id: str) -> Session:
        data = await self._request(
            "POST", "/api/users/create", json_body={"userId": user_id}, default_error="Failed to create user"
        )
        return self._parse(Session, data, "createUser")

    async def get_session_token(self, user_id: str) -> Session:
        data = await self._request(
            "POST", "/api/users/token", json_body={"userId": user_id}, default_error="Failed to get user token"
        )
        return self._parse(Session, data, "getSessionToken")

    async def get_pin_status(self, user_id: str) -> bool:
        data = await self._request(
            "GET", "/api/users/status", params={"userId": user_id}, default_error="Failed to get PIN status"
        )
        # Only a JSON true counts; "false" or 1 must not skip PIN setup
        return data.get("hasPinEnabled") is True

    async def create_pin_challenge(self, session_token: str) -> IssuedChallenge:
        data = await self._request(
            "POST",
            "/api/users/pin/challenge",
            json_body={"userToken": session_token},
            default_error="Failed to create PIN challenge",
        )
        return self._parse(IssuedChallenge, data, "createPinChallenge")

    async def create_wallet_challenge(self, session_token: str) -> IssuedChallenge:
        data = await self._request(
            "POST",
            "/api/wallet/create",
            json_body={"userToken": session_token},
            default_error="Failed to create wallet",
        )
        return self._parse(IssuedChallenge, data, "createWalletChallenge")

    async def list_wallets(self, user_id: str) -> List[Wallet]:
        data = await self._request(
            "GET", "/api/wallet/list", params={"userId": user_id}, default_error="Failed to load wallets"
        )
        raw = data.get("wallets")
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise BackendError("Malformed listWallets response: wallets is not a list")
        try:
            return [Wallet.model_validate(w) for w in raw]
        except ValidationError as ve:
            raise BackendError(f"Failed to parse wallets: {ve}") from ve

    # --------------- Internal ---------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        default_error: str,
    ) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, path, json=json_body, params=params)
        except httpx.RequestError as exc:
            raise BackendError(f"{default_error}: backend unreachable") from exc

        if 200 <= resp.status_code < 300:
            try:
                payload = resp.json()
            except ValueError as exc:
                raise BackendError(f"{default_error}: invalid JSON response") from exc
            if not isinstance(payload, dict):
                raise BackendError(f"{default_error}: unexpected response shape")
            return payload

        message = self._error_message(resp) or default_error
        logger.debug("%s %s -> HTTP %s", method, path, resp.status_code)
        raise BackendError(message, status_code=resp.status_code)

    @staticmethod
    def _error_message(resp: httpx.Response) -> Optional[str]:
        try:
            body = resp.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, str) and err:
                return err
            if isinstance(err, dict) and isinstance(err.get("message"), str):
                return err["message"]
        return None

    @staticmethod
    def _parse(model: type, data: Dict[str, Any], operation: str):
        try:
            return model.model_validate(data)
        except ValidationError as ve:
            raise BackendError(f"Failed to parse {operation} response: {ve}") from ve


__all__ = [
    "IssuedChallenge",
    "Session",
    "Wallet",
    "WalletBackendClient",
]
