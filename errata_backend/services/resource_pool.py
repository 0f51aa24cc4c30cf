"""Lazily-connected shared resource with coalesced connect and close."""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PoolState(str, enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


class ResourcePoolClosedError(RuntimeError):
    pass


class _Snapshot:
    """One state of the machine. Identity comparison tells a waiter whether it is still current."""

    __slots__ = ("kind", "task", "resource")

    def __init__(self, kind: PoolState, task: Optional[asyncio.Future] = None, resource=None):
        self.kind = kind
        self.task = task
        self.resource = resource


class ResourcePool(Generic[T]):
    """
    Holds at most one live resource created by ``connect`` and disposed by ``release``.

    Concurrent ``acquire()`` calls share one in-flight connect; concurrent
    ``close()`` calls share one in-flight release. A failed connect returns the
    pool to idle so the next acquire retries. A failed release also returns to
    idle and re-raises so close can be called again.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[T]],
        release: Callable[[T], Awaitable[None]],
        name: str = "resource",
    ):
        self._connect = connect
        self._release = release
        self._name = name
        self._state = _Snapshot(PoolState.IDLE)

    @property
    def state(self) -> PoolState:
        return self._state.kind

    async def acquire(self) -> T:
        while True:
            current = self._state

            if current.kind is PoolState.IDLE:
                task = asyncio.ensure_future(self._connect())
                self._state = _Snapshot(PoolState.INITIALIZING, task=task)
                logger.debug("[POOL] %s connecting", self._name)
                continue

            if current.kind is PoolState.INITIALIZING:
                try:
                    resource = await asyncio.shield(current.task)
                except Exception:
                    if self._state is current:
                        self._state = _Snapshot(PoolState.IDLE)
                        logger.warning("[POOL] %s connect failed", self._name)
                        raise
                    continue
                if self._state is current:
                    self._state = _Snapshot(PoolState.READY, resource=resource)
                    return resource
                continue

            if current.kind is PoolState.READY:
                return current.resource

            if current.kind is PoolState.CLOSING:
                try:
                    await asyncio.shield(current.task)
                except Exception as exc:
                    logger.debug("[POOL] %s close failed while acquiring: %s", self._name, exc)
                continue

            raise ResourcePoolClosedError(f"{self._name} pool is closed")

    async def close(self) -> None:
        current = self._state

        if current.kind is PoolState.CLOSED:
            return
        if current.kind is PoolState.IDLE:
            self._state = _Snapshot(PoolState.CLOSED)
            return
        if current.kind is PoolState.CLOSING:
            await asyncio.shield(current.task)
            return

        task = asyncio.ensure_future(self._close_from(current))
        self._state = _Snapshot(PoolState.CLOSING, task=task)
        await asyncio.shield(task)

    async def _close_from(self, previous: _Snapshot) -> None:
        if previous.kind is PoolState.INITIALIZING:
            try:
                resource = await asyncio.shield(previous.task)
            except Exception as exc:
                # Nothing was connected, so there is nothing to release.
                logger.debug("[POOL] %s connect failed during close: %s", self._name, exc)
                self._state = _Snapshot(PoolState.CLOSED)
                return
        else:
            resource = previous.resource

        try:
            await self._release(resource)
        except Exception:
            logger.exception("[POOL] %s release failed; close may be retried", self._name)
            self._state = _Snapshot(PoolState.IDLE)
            raise

        self._state = _Snapshot(PoolState.CLOSED)
        logger.debug("[POOL] %s closed", self._name)
