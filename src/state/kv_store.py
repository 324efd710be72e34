from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken


logger = logging.getLogger(__name__)


class KeyValueStoreError(RuntimeError):
    """Raised when the backing storage cannot be read or written."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _dump_map(data: Dict[str, str]) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _load_map(raw: bytes | str) -> Dict[str, str]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("stored value is not a JSON object")
    return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}


class JsonFileStore:
    """
    Local key-value store backed by a single JSON file: { key: value, ... }.

    - The file is re-read on every access; another process may have written it
      since the last call (last writer wins).
    - A missing file reads as empty.
    - Unreadable or corrupt content raises `KeyValueStoreError`.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return _load_map(f.read())
        except (OSError, ValueError) as exc:
            raise KeyValueStoreError(f"Failed to read {self._path}") from exc

    def _write(self, data: Dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
        except OSError as exc:
            raise KeyValueStoreError(f"Failed to write {self._path}") from exc

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3KeyValueStore:
    """
    S3-backed key-value map, encrypted at rest using Fernet.

    Usage
    - Provide S3 bucket/key and a Fernet key (the runner loads it from SSM).
    - The whole map lives in one object; `set`/`remove` read, modify and put it
      back. Writes are unconditional (last writer wins).
    - A missing object reads as an empty map.
    - Any S3 failure (service error, no endpoint, no credentials) raises
      `KeyValueStoreError`.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = _to_fernet(fernet_key)

    def _read(self) -> Dict[str, str]:
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
            body = resp["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return {}
            raise KeyValueStoreError(f"S3 read failed: {code}") from e
        except BotoCoreError as e:
            raise KeyValueStoreError(f"S3 read failed: {e}") from e

        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise KeyValueStoreError("Failed to decrypt stored map: invalid Fernet token") from ex
        try:
            return _load_map(decrypted)
        except ValueError as ex:
            raise KeyValueStoreError("Failed to parse decrypted JSON") from ex

    def _write(self, data: Dict[str, str]) -> None:
        ciphertext = self._fernet.encrypt(_dump_map(data))
        try:
            self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            raise KeyValueStoreError(f"S3 write failed: {code}") from e
        except BotoCoreError as e:
            raise KeyValueStoreError(f"S3 write failed: {e}") from e
        logger.debug("Wrote %d entries to s3://%s/%s", len(data), self._obj.bucket, self._obj.key)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


__all__ = [
    "JsonFileStore",
    "KeyValueStore",
    "KeyValueStoreError",
    "S3KeyValueStore",
]
