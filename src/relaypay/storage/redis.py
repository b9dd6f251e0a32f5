"""
Redis Storage Backend.

Production storage backend using Redis for persistence, so queued jobs and
scheduled payments survive a process restart. Requires the redis package.
"""

from __future__ import annotations

import json
import os
from typing import Any

from relaypay.storage.base import StorageBackend, matches, register_storage_backend


class RedisStorage(StorageBackend):
    """
    Redis storage backend.

    Each record is a JSON string under ``<prefix>:<collection>:<key>``; a set
    under ``<prefix>:<collection>:_index`` lists the keys of a collection.
    """

    # Swap the stored document only if nobody changed it since we read it
    _SWAP_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        redis.call("set", KEYS[1], ARGV[2])
        return 1
    else
        return 0
    end
    """

    # Bounded optimistic retries when a concurrent writer touches other fields
    _CAS_RETRIES = 5

    def __init__(
        self,
        redis_url: str | None = None,
        prefix: str = "relaypay",
    ) -> None:
        """
        Initialize Redis storage.

        Args:
            redis_url: Redis connection URL (or from RELAYPAY_REDIS_URL env)
            prefix: Key prefix for all storage keys
        """
        self._redis_url = redis_url or os.environ.get(
            "RELAYPAY_REDIS_URL",
            "redis://localhost:6379/0",
        )
        self._prefix = prefix
        self._client = None

    def _get_client(self):
        """Lazy-load Redis client."""
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _make_key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:{collection}:{key}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:_index"

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        client = self._get_client()
        await client.set(self._make_key(collection, key), json.dumps(data))
        await client.sadd(self._index_key(collection), key)

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        client = self._get_client()
        data = await client.get(self._make_key(collection, key))
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            # Counters created via atomic_add are raw strings
            return {"value": data}

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        client = self._get_client()
        result = await client.delete(self._make_key(collection, key))
        await client.srem(self._index_key(collection), key)
        return result > 0

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query data with optional filters."""
        client = self._get_client()
        keys = sorted(await client.smembers(self._index_key(collection)))

        results = []
        for key in keys:
            data = await self.get(collection, key)
            if data is None or not matches(data, filters):
                continue
            data["_key"] = key
            results.append(data)

        results = results[offset:]
        if limit is not None:
            results = results[:limit]
        return results

    async def update(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> bool:
        # Merged through the swap script so a concurrent CAS is never clobbered
        for _ in range(self._CAS_RETRIES):
            outcome = await self._swap(collection, key, None, data)
            if outcome is not None:
                return outcome
        return False

    async def compare_and_set(
        self,
        collection: str,
        key: str,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> bool:
        for _ in range(self._CAS_RETRIES):
            outcome = await self._swap(collection, key, expected, updates)
            if outcome is not None:
                return outcome
        return False

    async def _swap(
        self,
        collection: str,
        key: str,
        expected: dict[str, Any] | None,
        updates: dict[str, Any],
    ) -> bool | None:
        """
        One optimistic round: read, check, merge, swap.

        Returns True/False for a definite outcome, None when the record changed
        underneath us and the round should be repeated.
        """
        client = self._get_client()
        redis_key = self._make_key(collection, key)
        raw = await client.get(redis_key)
        if raw is None:
            return False
        current = json.loads(raw)
        if expected is not None and not matches(current, expected):
            return False
        current.update(updates)
        swapped = await client.eval(self._SWAP_SCRIPT, 1, redis_key, raw, json.dumps(current))
        return True if int(swapped) == 1 else None

    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        if filters:
            return len(await self.query(collection, filters))
        client = self._get_client()
        return await client.scard(self._index_key(collection))

    async def clear(self, collection: str) -> int:
        client = self._get_client()
        keys = await client.smembers(self._index_key(collection))
        for key in keys:
            await self.delete(collection, key)
        return len(keys)

    async def atomic_add(
        self,
        collection: str,
        key: str,
        amount: str,
    ) -> str:
        client = self._get_client()
        # INCRBYFLOAT is atomic; the value is kept as a raw string
        new_val = await client.incrbyfloat(self._make_key(collection, key), float(amount))
        await client.sadd(self._index_key(collection), key)
        return str(new_val)

    async def health_check(self) -> bool:
        """Check Redis connection."""
        try:
            await self._get_client().ping()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


# Register backend
register_storage_backend("redis", RedisStorage)
