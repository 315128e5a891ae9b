"""
Redis-backed cache store.

Each entity is stored as one JSON string value under its entity key
(optionally prefixed). The last-write-wins version lives in a companion
key "<key>@version". Writes WATCH that key, compare versions, and
write value and version in one MULTI/EXEC transaction.

Invariants:
    - Values are full replacements, never merged
    - Value and version change together or not at all
    - A write carrying an older version than the stored one is a no-op
    - Tombstone versions survive eviction of the value
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ..errors import ProjectionWriteError
from .base import Version, decode_version, encode_version, is_newer

logger = logging.getLogger(__name__)

VERSION_SUFFIX = "@version"
MAX_WATCH_ATTEMPTS = 10


class RedisKeyValueStore:
    """KeyValueStore on Redis strings.

    Example:
        >>> store = RedisKeyValueStore(RedisConfig(url="redis://localhost:6379/0"))
        >>> await store.connect()
        >>> await store.put("movie:1", {"title": "Arrival", "year": 2016})
    """

    def __init__(self, config: Any, name: str = "redis-cache") -> None:
        self.config = config
        self.name = name
        self.prefix = config.cache_prefix
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Connect and verify with PING."""
        if self._client is not None:
            return
        self._client = redis.from_url(
            self.config.url,
            decode_responses=True,
            max_connections=self.config.max_connections,
            socket_timeout=self.config.socket_timeout_s,
            retry_on_timeout=True,
        )
        try:
            await self._client.ping()
        except RedisError as e:
            self._client = None
            raise ProjectionWriteError(f"Failed to connect to Redis: {e}", store=self.name) from e
        logger.info("Connected to Redis cache", extra={"url": self.config.redacted_url})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis cache closed")

    async def _require_client(self) -> redis.Redis:
        if self._client is None:
            await self.connect()
        assert self._client is not None
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> dict[str, Any] | None:
        client = await self._require_client()
        try:
            value = await client.get(self._key(key))
        except RedisError as e:
            raise ProjectionWriteError(f"Redis GET failed: {e}", store=self.name, key=key) from e
        return json.loads(value) if value is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        client = await self._require_client()
        try:
            await client.set(self._key(key), json.dumps(value))
        except RedisError as e:
            raise ProjectionWriteError(f"Redis SET failed: {e}", store=self.name, key=key) from e

    async def delete(self, key: str) -> bool:
        client = await self._require_client()
        try:
            return await client.delete(self._key(key)) > 0
        except RedisError as e:
            raise ProjectionWriteError(f"Redis DEL failed: {e}", store=self.name, key=key) from e

    async def get_version(self, key: str) -> Version | None:
        client = await self._require_client()
        try:
            raw = await client.get(self._key(key) + VERSION_SUFFIX)
        except RedisError as e:
            raise ProjectionWriteError(f"Redis GET failed: {e}", store=self.name, key=key) from e
        return decode_version(raw)

    async def apply_put(self, key: str, value: dict[str, Any], version: Version) -> bool:
        def stage(pipe: Any) -> None:
            pipe.set(self._key(key), json.dumps(value))

        return await self._compare_and_set(key, version, stage, "SET")

    async def apply_delete(self, key: str, version: Version) -> bool:
        def stage(pipe: Any) -> None:
            pipe.delete(self._key(key))

        return await self._compare_and_set(key, version, stage, "DEL")

    async def _compare_and_set(
        self,
        key: str,
        version: Version,
        stage: Callable[[Any], None],
        command: str,
    ) -> bool:
        """WATCH the version key, compare, then MULTI/EXEC the staged write.

        Returns False when the stored version is at least as new. A
        concurrent change of the version key aborts EXEC and the compare
        runs again.
        """
        client = await self._require_client()
        version_key = self._key(key) + VERSION_SUFFIX
        try:
            async with client.pipeline(transaction=True) as pipe:
                for _ in range(MAX_WATCH_ATTEMPTS):
                    await pipe.watch(version_key)
                    if not is_newer(version, decode_version(await pipe.get(version_key))):
                        return False
                    pipe.multi()
                    stage(pipe)
                    pipe.set(version_key, encode_version(version))
                    try:
                        await pipe.execute()
                    except WatchError:
                        logger.debug("Version changed during write, retrying", extra={"key": key})
                        continue
                    return True
        except RedisError as e:
            raise ProjectionWriteError(
                f"Redis MULTI/{command} failed: {e}", store=self.name, key=key
            ) from e
        raise ProjectionWriteError(
            f"Version of {key} kept changing after {MAX_WATCH_ATTEMPTS} attempts",
            store=self.name,
            key=key,
        )
