"""
Key-value persistence for tracker state.

Interface
─────────
  get_item(key)        -> str | None
  set_item(key, value) -> None
  remove_item(key)     -> None

All three are coroutines.  The tracker depends only on this interface; any
backend satisfying it is substitutable.

Backends
────────
  MemoryStore  dict-backed, for tests and ephemeral sessions
  FileStore    one file per key under STATE_DIR, atomic replace on write
  RedisStore   redis.asyncio — an embedded/local Redis on the device

Errors are logged and re-raised as StorageError.  Nothing here retries or
degrades to a fallback value: a read that silently returned None would reset
playback history and hand out fresh quota.
"""
from __future__ import annotations

import asyncio
import os
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import quote

from redis.asyncio import Redis, RedisError

import config
from errors import StorageError
from logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


# ── In-memory ─────────────────────────────────────────────────────────────────

class MemoryStore:
    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


# ── Filesystem ────────────────────────────────────────────────────────────────

class FileStore:
    """Each key is a file named after its URL-quoted key.  Sync I/O runs via asyncio.to_thread."""

    def __init__(self, directory: Optional[str] = None) -> None:
        self.directory = directory or config.STATE_DIR

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, quote(key, safe="") + ".json")

    def _read(self, key: str) -> Optional[str]:
        try:
            with open(self._path(key), "r", encoding="utf-8") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: str) -> None:
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(key)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(value)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)

    def _remove(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass

    async def get_item(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "get_item", "key": key, "error": str(exc)})
            raise StorageError(f"Failed to read '{key}'") from exc

    async def set_item(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._write, key, value)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "set_item", "key": key, "error": str(exc)})
            raise StorageError(f"Failed to write '{key}'") from exc

    async def remove_item(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove, key)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "remove_item", "key": key, "error": str(exc)})
            raise StorageError(f"Failed to remove '{key}'") from exc


# ── Redis ─────────────────────────────────────────────────────────────────────

class RedisStore:
    """
    Keys are namespaced with `prefix` so several bundles / users can share one
    Redis.  Pass a ready client (e.g. FakeAsyncRedis in tests) or let the
    store create one lazily from REDIS_URL.
    """

    def __init__(self, client: Optional[Redis] = None, url: Optional[str] = None,
                 prefix: str = "bundleguard:") -> None:
        self._redis = client
        self._url = url or config.REDIS_URL
        self.prefix = prefix

    async def get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self._url, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get_item(self, key: str) -> Optional[str]:
        try:
            r = await self.get_redis()
            value = await r.get(self._key(key))
        except (RedisError, OSError) as exc:
            logger.error("redis_error", extra={"op": "get_item", "key": key, "error": str(exc)})
            raise StorageError(f"Failed to read '{key}'") from exc
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set_item(self, key: str, value: str) -> None:
        try:
            r = await self.get_redis()
            await r.set(self._key(key), value)
        except (RedisError, OSError) as exc:
            logger.error("redis_error", extra={"op": "set_item", "key": key, "error": str(exc)})
            raise StorageError(f"Failed to write '{key}'") from exc

    async def remove_item(self, key: str) -> None:
        try:
            r = await self.get_redis()
            await r.delete(self._key(key))
        except (RedisError, OSError) as exc:
            logger.error("redis_error", extra={"op": "remove_item", "key": key, "error": str(exc)})
            raise StorageError(f"Failed to remove '{key}'") from exc
