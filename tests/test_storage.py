"""Tests for storage backends and the backend registry."""

import asyncio

import pytest

from relaypay.core.exceptions import ConfigurationError
from relaypay.storage import (
    InMemoryStorage,
    RedisStorage,
    get_storage,
    list_storage_backends,
)


@pytest.mark.asyncio
async def test_save_get_returns_copies(storage):
    record = {"status": "pending", "nested": {"n": 1}}
    await storage.save("things", "a", record)

    loaded = await storage.get("things", "a")
    loaded["nested"]["n"] = 99

    assert (await storage.get("things", "a"))["nested"]["n"] == 1
    assert await storage.get("things", "missing") is None


@pytest.mark.asyncio
async def test_query_filters_and_paginates(storage):
    for i in range(5):
        await storage.save("things", f"k{i}", {"i": i, "even": i % 2 == 0})

    evens = await storage.query("things", filters={"even": True})
    page = await storage.query("things", limit=2, offset=1)

    assert sorted(r["i"] for r in evens) == [0, 2, 4]
    assert all("_key" in r for r in evens)
    assert len(page) == 2
    assert await storage.count("things") == 5
    assert await storage.count("things", {"even": False}) == 2


@pytest.mark.asyncio
async def test_update_and_delete(storage):
    assert await storage.update("things", "a", {"x": 1}) is False

    await storage.save("things", "a", {"x": 0, "y": 0})
    assert await storage.update("things", "a", {"x": 1}) is True
    assert await storage.get("things", "a") == {"x": 1, "y": 0}

    assert await storage.delete("things", "a") is True
    assert await storage.delete("things", "a") is False


@pytest.mark.asyncio
async def test_compare_and_set(storage):
    await storage.save("things", "a", {"status": "pending"})

    assert await storage.compare_and_set("things", "a", {"status": "claimed"}, {"n": 1}) is False
    assert await storage.compare_and_set(
        "things", "a", {"status": "pending"}, {"status": "claimed"}
    )
    assert (await storage.get("things", "a"))["status"] == "claimed"
    assert await storage.compare_and_set("things", "missing", {}, {"x": 1}) is False


@pytest.mark.asyncio
async def test_compare_and_set_has_single_winner(storage):
    await storage.save("things", "a", {"status": "pending"})

    results = await asyncio.gather(
        *[
            storage.compare_and_set(
                "things", "a", {"status": "pending"}, {"status": "claimed", "by": i}
            )
            for i in range(20)
        ]
    )

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_atomic_add(storage):
    assert await storage.atomic_add("counters", "c", "1") == "1"
    assert await storage.atomic_add("counters", "c", "2.5") == "3.5"
    assert await storage.atomic_add("counters", "c", "-3.5") == "0.0"
    assert (await storage.get("counters", "c")) == {"value": "0.0"}


@pytest.mark.asyncio
async def test_clear(storage):
    await storage.save("things", "a", {})
    await storage.save("things", "b", {})

    assert await storage.clear("things") == 2
    assert await storage.count("things") == 0


class TestRegistry:
    def test_builtin_backends_registered(self) -> None:
        backends = list_storage_backends()
        assert "memory" in backends
        assert "redis" in backends

    def test_get_storage_by_name(self) -> None:
        assert isinstance(get_storage("memory"), InMemoryStorage)
        assert isinstance(get_storage("redis", redis_url="redis://localhost:6379/0"), RedisStorage)

    def test_get_storage_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("RELAYPAY_STORAGE_BACKEND", "memory")
        assert isinstance(get_storage(), InMemoryStorage)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown storage backend"):
            get_storage("cassandra")
