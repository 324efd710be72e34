from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from common.backend import WalletBackendClient
from common.challenges import ChallengeExecutor, ChallengePoller
from common.config import Settings, require
from common.sessions import SessionManager
from common.wallets import WalletRegistry
from state.identity_store import IdentityStore
from state.kv_store import JsonFileStore, KeyValueStore, S3KeyValueStore
from state.models import WorkflowStep

from .machine import OnboardingStateMachine


logger = logging.getLogger(__name__)

CHALLENGE_ACTIONS = frozenset({"setup_pin", "create_wallet"})
ACTIONS = frozenset({"boot", "create", "resume", "recheck_pin", "refresh", "new_wallet", "clear"}) | CHALLENGE_ACTIONS


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def build_store(settings: Settings) -> KeyValueStore:
    """Pick the identity backend: S3 (encrypted) when a bucket is configured, else a local file."""
    if not settings.uses_s3:
        return JsonFileStore(settings.store_path)
    prefix = require(settings.param_prefix, "PARAM_PREFIX")
    params = _load_ssm_params(prefix, ["fernet_key"])
    fernet_key = require(params.get("fernet_key"), f"{prefix}fernet_key")
    return S3KeyValueStore(bucket=require(settings.state_bucket, "STATE_BUCKET"), key=settings.state_key, fernet_key=fernet_key)


def build_machine(
    settings: Settings,
    *,
    store: KeyValueStore,
    backend: WalletBackendClient,
    executor: Optional[ChallengeExecutor] = None,
) -> OnboardingStateMachine:
    return OnboardingStateMachine(
        identity_store=IdentityStore(store),
        sessions=SessionManager(backend),
        backend=backend,
        poller=ChallengePoller(interval=settings.poll_interval),
        wallets=WalletRegistry(backend),
        executor=executor,
    )


def _dispatch(machine: OnboardingStateMachine, action: str) -> Callable[[], Awaitable[bool]]:
    async def _sync(fn: Callable[[], bool]) -> bool:
        return fn()

    table: Dict[str, Callable[[], Awaitable[bool]]] = {
        "create": machine.create_account,
        "resume": machine.resume_account,
        "recheck_pin": machine.recheck_pin,
        "setup_pin": machine.setup_pin,
        "create_wallet": machine.create_wallet,
        "refresh": machine.refresh_wallets,
        "new_wallet": lambda: _sync(machine.request_new_wallet),
        "clear": lambda: _sync(machine.clear_account),
    }
    try:
        return table[action]
    except KeyError:
        raise ValueError(f"Unknown action: {action}") from None


async def run_action(
    action: str = "boot",
    *,
    executor: Optional[ChallengeExecutor] = None,
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    client: Optional[WalletBackendClient] = None,
) -> Dict[str, Any]:
    """
    Boot an onboarding machine, apply one action and report where it landed.

    - `boot` only restores the persisted identity.
    - `setup_pin` / `create_wallet` need an `executor` for the secure widget.

    Returns: {"ok": True, "action": str, "accepted": bool, **snapshot}.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    if action in CHALLENGE_ACTIONS and executor is None:
        raise RuntimeError(f"Action {action!r} requires a challenge executor")

    cfg = settings or Settings.from_env()
    kv = store or build_store(cfg)
    backend = client or WalletBackendClient(base_url=cfg.api_base_url, timeout=cfg.request_timeout)

    async with backend:
        machine = build_machine(cfg, store=kv, backend=backend, executor=executor)
        await machine.boot()
        accepted = True
        if action != "boot":
            if action == "resume" and (machine.step is not WorkflowStep.INITIAL or machine.error is not None):
                # Boot already resumed the stored identity, or failed and reported why
                accepted = False
            else:
                accepted = await _dispatch(machine, action)()
        logger.info("Action %s accepted=%s step=%s", action, accepted, machine.step.value)
        return {"ok": True, "action": action, "accepted": accepted, **machine.snapshot()}


def run_once(action: str = "boot", **kwargs: Any) -> Dict[str, Any]:
    return asyncio.run(run_action(action, **kwargs))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for non-interactive onboarding actions.

    Environment:
    - WALLET_API_BASE_URL, CHALLENGE_POLL_INTERVAL, WALLET_API_TIMEOUT
    - STATE_BUCKET, STATE_KEY (default: identity.json), PARAM_PREFIX
    - SSM under PARAM_PREFIX must provide: fernet_key
    """
    action = (event or {}).get("action") or "boot"
    return run_once(str(action))
