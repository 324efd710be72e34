from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .backend import DEFAULT_BASE_URL
from .challenges import DEFAULT_POLL_INTERVAL


ENV_API_BASE_URL = "WALLET_API_BASE_URL"
ENV_POLL_INTERVAL = "CHALLENGE_POLL_INTERVAL"
ENV_API_TIMEOUT = "WALLET_API_TIMEOUT"
ENV_STORE_PATH = "ONBOARDING_STORE_PATH"
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_KEY = "STATE_KEY"  # optional; defaults to "identity.json"
ENV_PARAM_PREFIX = "PARAM_PREFIX"

DEFAULT_STORE_PATH = ".cache/identity.json"
DEFAULT_STATE_KEY = "identity.json"


def _getenv(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    return v if v not in (None, "") else default


def _positive_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _getenv(env, name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if val < 0:
        raise ValueError(f"{name} must be >= 0, got {raw!r}")
    return val


def require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration resolved from environment variables.

    - `state_bucket` set → identity kept in S3 (Fernet key from SSM under
      `param_prefix`); otherwise in a local JSON file at `store_path`.
    """

    api_base_url: str = DEFAULT_BASE_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    request_timeout: float = 15.0
    store_path: str = DEFAULT_STORE_PATH
    state_bucket: Optional[str] = None
    state_key: str = DEFAULT_STATE_KEY
    param_prefix: Optional[str] = None

    @property
    def uses_s3(self) -> bool:
        return self.state_bucket is not None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            api_base_url=_getenv(env, ENV_API_BASE_URL, DEFAULT_BASE_URL) or DEFAULT_BASE_URL,
            poll_interval=_positive_float(env, ENV_POLL_INTERVAL, DEFAULT_POLL_INTERVAL),
            request_timeout=_positive_float(env, ENV_API_TIMEOUT, 15.0),
            store_path=_getenv(env, ENV_STORE_PATH, DEFAULT_STORE_PATH) or DEFAULT_STORE_PATH,
            state_bucket=_getenv(env, ENV_STATE_BUCKET),
            state_key=_getenv(env, ENV_STATE_KEY, DEFAULT_STATE_KEY) or DEFAULT_STATE_KEY,
            param_prefix=_getenv(env, ENV_PARAM_PREFIX),
        )
