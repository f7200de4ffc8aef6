from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from idemgate.idempotency.errors import RequestInProgressError
from idemgate.idempotency.memory_store import MemoryIdemStore
from idemgate.idempotency.store import CachedResponse, IdemStore


def _resp(body: bytes = b'{"success":true}') -> CachedResponse:
    return CachedResponse(
        status=200,
        headers=[("content-type", "application/json"), ("set-cookie", "a=1"), ("set-cookie", "b=2")],
        body=body,
    )


def test_memory_store_satisfies_protocol() -> None:
    assert isinstance(MemoryIdemStore(), IdemStore)


@pytest.mark.asyncio
async def test_set_and_get(memory_store: MemoryIdemStore) -> None:
    await memory_store.set("test-key", _resp(), 3600)
    cached = await memory_store.get("test-key")
    assert cached is not None
    assert cached.status == 200
    assert cached.body == b'{"success":true}'
    assert cached.header_values("Set-Cookie") == ["a=1", "b=2"]


@pytest.mark.asyncio
async def test_get_missing_returns_none(memory_store: MemoryIdemStore) -> None:
    assert await memory_store.get("nonexistent") is None


@pytest.mark.asyncio
async def test_set_replaces_prior_value(memory_store: MemoryIdemStore) -> None:
    await memory_store.set("k", _resp(b"one"), 3600)
    await memory_store.set("k", _resp(b"two"), 3600)
    cached = await memory_store.get("k")
    assert cached is not None and cached.body == b"two"


@pytest.mark.asyncio
async def test_expired_entry_is_absent_before_sweep(memory_store: MemoryIdemStore) -> None:
    await memory_store.set("test-key", _resp(), 0.05)
    await asyncio.sleep(0.1)
    assert await memory_store.get("test-key") is None
    # still held in memory until the sweep reclaims it
    assert memory_store.size() == 1
    assert await memory_store.sweep() == 1
    assert memory_store.size() == 0


@pytest.mark.asyncio
async def test_background_sweep_reclaims_expired_entries() -> None:
    store = MemoryIdemStore(sweep_interval_s=0.05)
    try:
        await store.set("a", _resp(), 0.01)
        await store.set("b", _resp(), 3600)
        await asyncio.sleep(0.2)
        assert store.size() == 1
        assert await store.get("b") is not None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_lock_conflict_then_release() -> None:
    store = MemoryIdemStore(lock_timeout_s=0.05)
    release1 = await store.lock("test-key")

    with pytest.raises(RequestInProgressError):
        await store.lock("test-key")

    await release1()
    release2 = await store.lock("test-key")
    await release2()
    await store.close()


@pytest.mark.asyncio
async def test_lock_waits_within_bound_for_release() -> None:
    store = MemoryIdemStore(lock_timeout_s=0.5)
    release1 = await store.lock("k")

    async def _release_later() -> None:
        await asyncio.sleep(0.05)
        await release1()

    releaser = asyncio.create_task(_release_later())
    release2 = await store.lock("k")
    await releaser
    await release2()


@pytest.mark.asyncio
async def test_release_twice_does_not_free_next_holder() -> None:
    store = MemoryIdemStore(lock_timeout_s=0.02)
    release1 = await store.lock("k")
    await release1()
    release2 = await store.lock("k")
    await release1()  # stale second call is a no-op
    with pytest.raises(RequestInProgressError):
        await store.lock("k")
    await release2()


@pytest.mark.asyncio
async def test_different_keys_lock_independently(memory_store: MemoryIdemStore) -> None:
    ra = await memory_store.lock("a")
    rb = await memory_store.lock("b")
    await ra()
    await rb()
    assert memory_store.lock_count() == 2


def test_concurrent_lock_creation_converges_on_one_primitive() -> None:
    store = MemoryIdemStore()
    with ThreadPoolExecutor(max_workers=16) as pool:
        locks = list(pool.map(lambda _: store._lock_for("shared"), range(200)))
    assert all(mu is locks[0] for mu in locks)
    assert store.lock_count() == 1


@pytest.mark.asyncio
async def test_delete(memory_store: MemoryIdemStore) -> None:
    await memory_store.set("k", _resp(), 3600)
    assert await memory_store.delete("k") is True
    assert await memory_store.delete("k") is False
    assert await memory_store.get("k") is None


@pytest.mark.asyncio
async def test_entries_gauge_is_labelled_per_store() -> None:
    from prometheus_client import REGISTRY

    orders = MemoryIdemStore(name="orders-gauge")
    carts = MemoryIdemStore(name="carts-gauge")
    try:
        await orders.set("a", _resp(), 3600)
        await orders.set("b", _resp(), 3600)
        await carts.set("a", _resp(), 3600)
        await carts.delete("a")

        def entries(name: str) -> float | None:
            return REGISTRY.get_sample_value("idemgate_memory_entries", {"store": name})

        assert entries("orders-gauge") == 2.0
        assert entries("carts-gauge") == 0.0
    finally:
        await orders.close()
        await carts.close()
