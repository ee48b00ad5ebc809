"""Persistent cache stores for guarded fetch breakers.

Stores are byte-oriented key-value backends. Breakers own serialization via a
``CacheCodec`` and treat every store error as "no persistent cache": reads and
writes are logged and swallowed by the breaker, never by the store itself.
"""

import asyncio
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote

import redis.asyncio as aioredis

from worldmonitor_core.settings import GuardedFetchSettings


class AbstractCacheStore(ABC):
    """Abstract persistent cache interface."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the payload stored under ``key``, or ``None``."""

    @abstractmethod
    async def set(self, key: str, payload: bytes) -> None:
        """Store ``payload`` under ``key``, replacing any previous payload."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryCacheStore(AbstractCacheStore):
    """Process-local store, mainly for tests and single-run tools."""

    def __init__(self) -> None:
        self._payloads: dict[str, bytes] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._payloads.get(key)

    async def set(self, key: str, payload: bytes) -> None:
        with self._lock:
            self._payloads[key] = bytes(payload)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._payloads.pop(key, None)

    def keys(self) -> list[str]:
        """Return stored keys in insertion order."""
        with self._lock:
            return list(self._payloads)


class FileCacheStore(AbstractCacheStore):
    """One file per key under a directory; survives process restarts.

    Writes go through a temporary file and ``os.replace`` so a reader never
    observes a partially written payload. Blocking file I/O runs in the default
    executor.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        """Create a file store rooted at ``directory``.

        Args:
            directory: Directory holding cache files. Created on first write.
        """
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        """Return the file path used for ``key``."""
        return self.directory / f"{quote(key, safe='')}.cache"

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def set(self, key: str, payload: bytes) -> None:
        await asyncio.to_thread(self._write, self.path_for(key), bytes(payload))

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.path_for(key).unlink, missing_ok=True)

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    @staticmethod
    def _write(path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class RedisCacheStore(AbstractCacheStore):
    """Redis-backed store for deployments that share a cache host."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        key_prefix: str = "guarded-fetch:",
        ttl_seconds: int | None = None,
    ) -> None:
        """Wrap an async Redis client.

        Args:
            client: ``redis.asyncio`` client created with ``decode_responses``
                disabled so payloads round-trip as bytes.
            key_prefix: Prefix prepended to every breaker name.
            ttl_seconds: Optional expiry applied on every write.
        """
        self._client = client
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        key_prefix: str = "guarded-fetch:",
        ttl_seconds: int | None = None,
    ) -> "RedisCacheStore":
        """Build a store with a fresh client for ``url``."""
        client = aioredis.from_url(
            url,
            decode_responses=False,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        return cls(client, key_prefix=key_prefix, ttl_seconds=ttl_seconds)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def get(self, key: str) -> bytes | None:
        payload = await self._client.get(self._key(key))
        if payload is None:
            return None
        if isinstance(payload, str):
            return payload.encode("utf-8")
        return bytes(payload)

    async def set(self, key: str, payload: bytes) -> None:
        await self._client.set(self._key(key), payload, ex=self._ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()


def build_cache_store(settings: GuardedFetchSettings) -> AbstractCacheStore:
    """Return the persistent store selected by ``settings.cache_store``."""
    if settings.cache_store == "file":
        if settings.cache_dir is None:
            raise ValueError("cache_dir is required when cache_store is file")
        return FileCacheStore(settings.cache_dir)
    if settings.cache_store == "redis":
        if settings.redis_url is None:
            raise ValueError("redis_url is required when cache_store is redis")
        return RedisCacheStore.from_url(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            ttl_seconds=settings.redis_ttl_seconds,
        )
    return InMemoryCacheStore()
