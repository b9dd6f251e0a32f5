"""
In-Memory Storage Backend.

Default storage backend that keeps all data in memory.
Suitable for development and testing, but not for production.
"""

from __future__ import annotations

from copy import deepcopy
from decimal import Decimal, InvalidOperation
from typing import Any

from relaypay.storage.base import StorageBackend, matches, register_storage_backend


class InMemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    Stores all data in Python dicts. Data is lost when process ends.
    No method awaits between reading and writing a record, so every
    operation is atomic with respect to other coroutines on the loop.
    """

    def __init__(self, **_: Any) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def _ensure_collection(self, collection: str) -> dict[str, Any]:
        """Ensure collection exists and return it."""
        return self._data.setdefault(collection, {})

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        coll = self._ensure_collection(collection)
        coll[key] = deepcopy(data)

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        coll = self._ensure_collection(collection)
        data = coll.get(key)
        if data is None:
            return None
        if not isinstance(data, dict):
            # Counters created via atomic_add
            return {"value": data}
        return deepcopy(data)

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        coll = self._ensure_collection(collection)
        if key in coll:
            del coll[key]
            return True
        return False

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query data with optional filters."""
        coll = self._ensure_collection(collection)

        results = []
        for key, data in coll.items():
            if not isinstance(data, dict) or not matches(data, filters):
                continue
            result = deepcopy(data)
            result["_key"] = key
            results.append(result)

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
        coll = self._ensure_collection(collection)
        if key not in coll:
            return False
        coll[key].update(deepcopy(data))
        return True

    async def compare_and_set(
        self,
        collection: str,
        key: str,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> bool:
        coll = self._ensure_collection(collection)
        current = coll.get(key)
        if not isinstance(current, dict) or not matches(current, expected):
            return False
        current.update(deepcopy(updates))
        return True

    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        if filters:
            return len(await self.query(collection, filters))
        return len(self._ensure_collection(collection))

    async def clear(self, collection: str) -> int:
        coll = self._ensure_collection(collection)
        count = len(coll)
        coll.clear()
        return count

    async def atomic_add(
        self,
        collection: str,
        key: str,
        amount: str,
    ) -> str:
        coll = self._ensure_collection(collection)
        current_val = coll.get(key)
        try:
            current = Decimal(str(current_val)) if current_val is not None else Decimal("0")
        except InvalidOperation:
            current = Decimal("0")

        new_val = current + Decimal(amount)
        # Stored as string to match Redis behavior
        coll[key] = str(new_val)
        return str(new_val)


# Register as default backend
register_storage_backend("memory", InMemoryStorage)
