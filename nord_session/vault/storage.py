"""
Key Stores — durable byte-blob storage for session seed records.

Each store maps a slot name (``session-key:<wallet>``) to one opaque record.
Backends:
- ``MemoryKeyStore``: process memory, for tests and short-lived clients.
- ``FileKeyStore``: one file per slot under a private directory.
- ``RedisKeyStore``: any asyncio redis-compatible client (get/set/delete).

Every backend reports failures as ``KeyStorageError``.
"""
import os
import asyncio
import hashlib
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

from ..exceptions import KeyStorageError

logger = logging.getLogger("nord.vault")


class KeyStore(ABC):
    """Abstract slot storage."""

    @abstractmethod
    async def load(self, slot: str) -> Optional[bytes]:
        """Return the record stored in ``slot`` or None."""

    @abstractmethod
    async def save(self, slot: str, record: bytes) -> None:
        """Store ``record`` in ``slot``, replacing any previous value."""

    @abstractmethod
    async def delete(self, slot: str) -> None:
        """Remove ``slot``. Deleting a missing slot is a no-op."""


class MemoryKeyStore(KeyStore):
    def __init__(self, records: Optional[dict[str, bytes]] = None):
        self._records: dict[str, bytes] = dict(records or {})

    async def load(self, slot: str) -> Optional[bytes]:
        return self._records.get(slot)

    async def save(self, slot: str, record: bytes) -> None:
        self._records[slot] = bytes(record)

    async def delete(self, slot: str) -> None:
        self._records.pop(slot, None)

    def __contains__(self, slot: object) -> bool:
        return slot in self._records

    def __len__(self) -> int:
        return len(self._records)


class FileKeyStore(KeyStore):
    """Stores each slot as ``<directory>/<sha256(slot)>.key`` with mode 0600.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a truncated record behind.
    """

    def __init__(self, directory: Union[str, Path]):
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, slot: str) -> Path:
        digest = hashlib.sha256(slot.encode("utf-8")).hexdigest()
        return self._directory / f"{digest}.key"

    def _read(self, slot: str) -> Optional[bytes]:
        path = self._path(slot)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, slot: str, record: bytes) -> None:
        self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._directory, prefix=".tmp-", suffix=".key")
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(record)
                fp.flush()
                os.fsync(fp.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path(slot))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _remove(self, slot: str) -> None:
        self._path(slot).unlink(missing_ok=True)

    async def load(self, slot: str) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self._read, slot)
        except OSError as err:
            raise KeyStorageError(f"Cannot read key slot {slot}: {err}") from err

    async def save(self, slot: str, record: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, slot, record)
        except OSError as err:
            raise KeyStorageError(f"Cannot write key slot {slot}: {err}") from err

    async def delete(self, slot: str) -> None:
        try:
            await asyncio.to_thread(self._remove, slot)
        except OSError as err:
            raise KeyStorageError(f"Cannot delete key slot {slot}: {err}") from err


class RedisKeyStore(KeyStore):
    """Slots kept in Redis under ``<namespace>:<slot>``, without expiry."""

    def __init__(self, redis: Any, namespace: str = "nord"):
        self._redis = redis
        self._namespace = namespace

    def _redis_key(self, slot: str) -> str:
        return f"{self._namespace}:{slot}"

    async def load(self, slot: str) -> Optional[bytes]:
        try:
            value = await self._redis.get(self._redis_key(slot))
        except Exception as err:
            raise KeyStorageError(f"Redis read failed for slot {slot}: {err}") from err
        if value is None:
            return None
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    async def save(self, slot: str, record: bytes) -> None:
        try:
            await self._redis.set(self._redis_key(slot), record)
        except Exception as err:
            raise KeyStorageError(f"Redis write failed for slot {slot}: {err}") from err

    async def delete(self, slot: str) -> None:
        try:
            await self._redis.delete(self._redis_key(slot))
        except Exception as err:
            raise KeyStorageError(f"Redis delete failed for slot {slot}: {err}") from err


def key_store_from_path(directory: Optional[str]) -> KeyStore:
    """File store when a directory is configured, memory store otherwise."""
    if directory:
        return FileKeyStore(directory)
    logger.warning("No key_store_dir configured; session keys will not survive restarts")
    return MemoryKeyStore()
