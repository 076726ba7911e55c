"""Revocation store - thin async Redis wrapper with per-call timeouts.

Holds the token whitelist / blacklist entries. All keys passed in are logical
keys; the configured prefix is applied here so several deployments can share
one Redis database.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RevocationStoreError(Exception):
    """The revocation store could not complete an operation."""

    pass


def _text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


class RevocationStore:
    """Key/value store with TTLs backing token revocation state."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        key_prefix: str = "",
        operation_timeout: float = 2.0,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.operation_timeout = operation_timeout

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        key_prefix: str = "",
        socket_timeout: float = 5.0,
        operation_timeout: float = 2.0,
    ) -> "RevocationStore":
        """Create a store backed by a new connection pool for ``url``."""
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, key_prefix=key_prefix, operation_timeout=operation_timeout)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _strip(self, key: Any) -> str:
        key = _text(key)
        if self.key_prefix and key.startswith(self.key_prefix):
            return key[len(self.key_prefix) :]
        return key

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        try:
            async with asyncio.timeout(self.operation_timeout):
                return await func()
        except TimeoutError as e:
            logger.warning(f"Revocation store {operation} timed out")
            raise RevocationStoreError(f"{operation} timed out") from e
        except (RedisError, OSError) as e:
            logger.warning(f"Revocation store {operation} failed: {e}")
            raise RevocationStoreError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Single-key operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        value = await self._call("get", lambda: self.client.get(self._key(key)))
        return _text(value)

    async def exists(self, key: str) -> bool:
        count = await self._call("exists", lambda: self.client.exists(self._key(key)))
        return bool(count)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Set ``key`` with an expiry. ``ttl_seconds`` must be positive."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self._call("set", lambda: self.client.set(self._key(key), value, ex=ttl_seconds))

    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed.

        A single DEL is atomic on the server, so when two callers race to
        delete the same key exactly one of them sees a count of 1.
        """
        if not keys:
            return 0
        full_keys = [self._key(k) for k in keys]
        return int(await self._call("delete", lambda: self.client.delete(*full_keys)))

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -2 if missing, -1 if no expiry."""
        return int(await self._call("ttl", lambda: self.client.ttl(self._key(key))))

    async def keys(self, pattern: str) -> list[str]:
        """Incrementally scan for keys matching a glob ``pattern``."""

        async def _scan() -> list[str]:
            return [
                self._strip(k)
                async for k in self.client.scan_iter(match=self._key(pattern), count=500)
            ]

        return await self._call("scan", _scan)

    # ------------------------------------------------------------------
    # Set operations (per-subject index)
    # ------------------------------------------------------------------

    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        """Add ``member`` and make sure the set lives at least ``ttl_seconds``."""
        full_key = self._key(key)

        async def _add() -> None:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.sadd(full_key, member)
                pipe.ttl(full_key)
                _, current_ttl = await pipe.execute()
            if int(current_ttl) < ttl_seconds:
                await self.client.expire(full_key, ttl_seconds)

        await self._call("sadd", _add)

    async def set_members(self, key: str) -> set[str]:
        members = await self._call("smembers", lambda: self.client.smembers(self._key(key)))
        return {_text(m) for m in members}

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(
            await self._call("srem", lambda: self.client.srem(self._key(key), *members))
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Check if the store is reachable."""
        try:
            return bool(await self._call("ping", self.client.ping))
        except RevocationStoreError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
