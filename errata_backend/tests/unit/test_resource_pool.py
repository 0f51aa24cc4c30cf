import asyncio

import pytest

from errata_backend.services.resource_pool import PoolState, ResourcePool, ResourcePoolClosedError


class _Resource:
    def __init__(self, ident):
        self.ident = ident


def _pool_with_gate():
    """Pool whose connect blocks until ``gate`` is set."""
    gate = asyncio.Event()
    calls = {"connect": 0, "release": []}

    async def connect():
        calls["connect"] += 1
        await gate.wait()
        return _Resource(calls["connect"])

    async def release(resource):
        calls["release"].append(resource.ident)

    return ResourcePool(connect, release, name="test"), gate, calls


@pytest.mark.asyncio
async def test_concurrent_acquires_share_one_connect():
    pool, gate, calls = _pool_with_gate()

    acquires = [asyncio.create_task(pool.acquire()) for _ in range(3)]
    await asyncio.sleep(0)
    assert pool.state is PoolState.INITIALIZING

    gate.set()
    resources = await asyncio.gather(*acquires)

    assert calls["connect"] == 1
    assert all(resource is resources[0] for resource in resources)
    assert pool.state is PoolState.READY


@pytest.mark.asyncio
async def test_acquire_when_ready_returns_same_resource():
    pool, gate, calls = _pool_with_gate()
    gate.set()

    first = await pool.acquire()
    second = await pool.acquire()

    assert first is second
    assert calls["connect"] == 1


@pytest.mark.asyncio
async def test_failed_connect_reverts_to_idle_and_next_acquire_retries():
    attempts = {"count": 0}

    async def connect():
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise ConnectionError("database unavailable")
        return _Resource(attempts["count"])

    async def release(resource):
        return None

    pool = ResourcePool(connect, release)

    with pytest.raises(ConnectionError):
        await pool.acquire()
    assert pool.state is PoolState.IDLE

    resource = await pool.acquire()
    assert resource.ident == 2
    assert pool.state is PoolState.READY


@pytest.mark.asyncio
async def test_close_during_connect_waits_then_releases():
    pool, gate, calls = _pool_with_gate()

    acquiring = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    closing = asyncio.create_task(pool.close())
    await asyncio.sleep(0)
    assert pool.state is PoolState.CLOSING

    gate.set()
    await closing

    assert calls["release"] == [1]
    assert pool.state is PoolState.CLOSED
    with pytest.raises(ResourcePoolClosedError):
        await acquiring


@pytest.mark.asyncio
async def test_close_discards_failed_connect():
    gate = asyncio.Event()
    released = []

    async def connect():
        await gate.wait()
        raise ConnectionError("refused")

    async def release(resource):
        released.append(resource)

    pool = ResourcePool(connect, release)
    acquiring = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    closing = asyncio.create_task(pool.close())
    await asyncio.sleep(0)

    gate.set()
    await closing

    assert released == []
    assert pool.state is PoolState.CLOSED
    with pytest.raises(ResourcePoolClosedError):
        await acquiring


@pytest.mark.asyncio
async def test_acquire_after_close_fails():
    pool, gate, _calls = _pool_with_gate()
    gate.set()
    await pool.acquire()
    await pool.close()

    with pytest.raises(ResourcePoolClosedError):
        await pool.acquire()


@pytest.mark.asyncio
async def test_close_from_idle_needs_no_release_and_is_idempotent():
    pool, _gate, calls = _pool_with_gate()

    await pool.close()
    await pool.close()

    assert pool.state is PoolState.CLOSED
    assert calls["connect"] == 0
    assert calls["release"] == []


@pytest.mark.asyncio
async def test_concurrent_closes_share_one_release():
    pool, gate, calls = _pool_with_gate()
    gate.set()
    await pool.acquire()

    await asyncio.gather(pool.close(), pool.close(), pool.close())

    assert calls["release"] == [1]


@pytest.mark.asyncio
async def test_failed_release_returns_to_idle_so_close_can_retry():
    failures = {"remaining": 1}
    released = []

    async def connect():
        return _Resource(1)

    async def release(resource):
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise RuntimeError("dispose failed")
        released.append(resource.ident)

    pool = ResourcePool(connect, release)
    await pool.acquire()

    with pytest.raises(RuntimeError):
        await pool.close()
    assert pool.state is PoolState.IDLE

    await pool.close()
    assert pool.state is PoolState.CLOSED
