from __future__ import annotations

import pytest

import onboarding.handler as handler
from common.config import Settings
from conftest import FakeExecutor, wallet_payload
from state.identity_store import IDENTITY_KEY
from state.kv_store import JsonFileStore


def _settings(tmp_path, **overrides) -> Settings:
    base = dict(poll_interval=0.0, store_path=str(tmp_path / "identity.json"))
    base.update(overrides)
    return Settings(**base)


@pytest.mark.asyncio
async def test_boot_without_identity(api, kv, tmp_path):
    out = await handler.run_action("boot", settings=_settings(tmp_path), store=kv, client=api.client())

    assert out["ok"] is True
    assert out["accepted"] is True
    assert out["step"] == "initial"
    assert out["user_id"] is None


@pytest.mark.asyncio
async def test_create_then_boot_resumes(api, kv, tmp_path):
    cfg = _settings(tmp_path)
    created = await handler.run_action("create", settings=cfg, store=kv, client=api.client())
    assert created["step"] == "awaiting_pin"

    booted = await handler.run_action("boot", settings=cfg, store=kv, client=api.client())
    assert booted["step"] == "awaiting_pin"
    assert booted["user_id"] == created["user_id"]


@pytest.mark.asyncio
async def test_resume_after_boot_restored_is_not_accepted(api, kv, tmp_path):
    api.known_users.add("user_123")
    kv.set(IDENTITY_KEY, "user_123")

    out = await handler.run_action("resume", settings=_settings(tmp_path), store=kv, client=api.client())

    assert out["accepted"] is False
    assert out["step"] == "awaiting_pin"


@pytest.mark.asyncio
async def test_resume_keeps_boot_error_for_unrecognized_identity(api, kv, tmp_path):
    kv.set(IDENTITY_KEY, "user_gone")

    out = await handler.run_action("resume", settings=_settings(tmp_path), store=kv, client=api.client())

    assert out["accepted"] is False
    assert out["step"] == "initial"
    assert out["error"] == "User not found"
    assert kv.get(IDENTITY_KEY) is None


@pytest.mark.asyncio
async def test_setup_pin_with_executor(api, kv, tmp_path):
    api.known_users.add("user_123")
    kv.set(IDENTITY_KEY, "user_123")
    executor = FakeExecutor(["IN_PROGRESS", "COMPLETE"])

    out = await handler.run_action(
        "setup_pin", executor=executor, settings=_settings(tmp_path), store=kv, client=api.client()
    )

    assert out["accepted"] is True
    assert out["step"] == "awaiting_wallet_creation"
    assert executor.calls == ["chal_1", "chal_1"]


@pytest.mark.asyncio
async def test_refresh_reports_wallets(api, kv, tmp_path):
    api.known_users.add("user_123")
    api.pin_enabled = True
    api.wallets = [wallet_payload("w-1")]
    kv.set(IDENTITY_KEY, "user_123")

    out = await handler.run_action("refresh", settings=_settings(tmp_path), store=kv, client=api.client())

    assert out["step"] == "managing_wallets"
    assert [w["id"] for w in out["wallets"]] == ["w-1"]
    assert api.count("/api/wallet/list") == 2


@pytest.mark.asyncio
async def test_clear_forgets_identity(api, kv, tmp_path):
    api.known_users.add("user_123")
    kv.set(IDENTITY_KEY, "user_123")

    out = await handler.run_action("clear", settings=_settings(tmp_path), store=kv, client=api.client())

    assert out["step"] == "initial"
    assert kv.get(IDENTITY_KEY) is None


@pytest.mark.asyncio
async def test_unknown_action_rejected(api, kv, tmp_path):
    with pytest.raises(ValueError, match="Unknown action"):
        await handler.run_action("explode", settings=_settings(tmp_path), store=kv, client=api.client())


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["setup_pin", "create_wallet"])
async def test_challenge_action_requires_executor(api, kv, tmp_path, action):
    with pytest.raises(RuntimeError, match="executor"):
        await handler.run_action(action, settings=_settings(tmp_path), store=kv, client=api.client())
    assert api.calls == []


def test_build_store_defaults_to_local_file(tmp_path):
    store = handler.build_store(_settings(tmp_path))

    assert isinstance(store, JsonFileStore)
    assert store.path == tmp_path / "identity.json"


def test_build_store_uses_s3_with_ssm_key(monkeypatch, tmp_path):
    seen = {}

    def fake_ssm(prefix, names):
        seen["prefix"] = prefix
        return {"fernet_key": "k" * 44}

    class _Recorder:
        def __init__(self, **kwargs):
            seen.update(kwargs)

    monkeypatch.setattr(handler, "_load_ssm_params", fake_ssm)
    monkeypatch.setattr(handler, "S3KeyValueStore", _Recorder)

    store = handler.build_store(_settings(tmp_path, state_bucket="bucket", param_prefix="/wallet/dev/"))

    assert isinstance(store, _Recorder)
    assert seen == {"prefix": "/wallet/dev/", "bucket": "bucket", "key": "identity.json", "fernet_key": "k" * 44}


def test_build_store_s3_requires_param_prefix(tmp_path):
    with pytest.raises(RuntimeError, match="PARAM_PREFIX"):
        handler.build_store(_settings(tmp_path, state_bucket="bucket"))


def test_build_store_s3_requires_fernet_key(monkeypatch, tmp_path):
    monkeypatch.setattr(handler, "_load_ssm_params", lambda prefix, names: {"fernet_key": None})

    with pytest.raises(RuntimeError, match="fernet_key"):
        handler.build_store(_settings(tmp_path, state_bucket="bucket", param_prefix="/p/"))


def test_run_once_drives_event_loop(api, kv, tmp_path):
    out = handler.run_once("boot", settings=_settings(tmp_path), store=kv, client=api.client())
    assert out["step"] == "initial"


def test_lambda_handler_reads_action(monkeypatch):
    seen = []

    def fake_run_once(action):
        seen.append(action)
        return {"ok": True, "action": action}

    monkeypatch.setattr(handler, "run_once", fake_run_once)

    assert handler.lambda_handler({"action": "clear"}, None)["action"] == "clear"
    assert handler.lambda_handler({}, None)["action"] == "boot"
    assert seen == ["clear", "boot"]
