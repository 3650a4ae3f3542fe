"""Keyed asyncio coordination primitives.

``KeyedLock`` serializes work per key inside one process and
``RedisKeyedLock`` does the same across worker processes. ``SingleFlight``
shares one in-flight call among concurrent callers; ``Coalescer`` keeps at
most one running plus one trailing call per key.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.exceptions import LockError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _consume_result(task: asyncio.Task) -> None:
    # Mark the exception as retrieved when every waiter has gone away
    if not task.cancelled():
        task.exception()


class KeyedLock:
    """One ``asyncio.Lock`` per key, created on demand."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock:
    """Per-key lock shared by every worker process through Redis."""

    def __init__(self, redis: Redis, prefix: str = "paygate:lock", timeout: float = 120, wait: float = 60):
        self._redis = redis
        self._prefix = prefix
        self._timeout = timeout
        self._wait = wait

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._redis.lock(
            f"{self._prefix}:{key}", timeout=self._timeout, blocking_timeout=self._wait
        )
        if not await lock.acquire():
            raise TimeoutError(f"Could not acquire lock for {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Lock for %s expired before release", key)


class SingleFlight:
    """Collapse concurrent calls for the same key into one shared call."""

    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Task] = {}

    def pending(self, key: Hashable) -> asyncio.Task | None:
        return self._calls.get(key)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        _consume_result(task)


class Coalescer:
    """Per-key runner: one call in flight, at most one trailing call queued.

    A caller arriving while a call runs joins the trailing call, which starts
    once the running one finishes, so every caller gets a result computed
    after it asked. Calls are shielded: a cancelled caller does not cancel
    the work.
    """

    def __init__(self) -> None:
        self._running: dict[Hashable, asyncio.Task] = {}
        self._trailing: dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._running or key in self._trailing

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        trailing = self._trailing.get(key)
        if trailing is not None:
            return await asyncio.shield(trailing)

        running = self._running.get(key)
        if running is None:
            task = asyncio.ensure_future(fn())
            self._track(key, task)
        else:
            task = asyncio.ensure_future(self._after(key, running, fn))
            self._trailing[key] = task
            task.add_done_callback(_consume_result)
        return await asyncio.shield(task)

    def _track(self, key: Hashable, task: asyncio.Task) -> None:
        self._running[key] = task
        task.add_done_callback(lambda t, k=key: self._finish(k, t))

    def _finish(self, key: Hashable, task: asyncio.Task) -> None:
        if self._running.get(key) is task:
            del self._running[key]
        _consume_result(task)

    async def _after(self, key: Hashable, previous: asyncio.Task, fn: Callable[[], Awaitable[Any]]) -> Any:
        await asyncio.wait([previous])
        me = asyncio.current_task()
        if self._trailing.get(key) is me:
            del self._trailing[key]
        self._running[key] = me
        try:
            return await fn()
        finally:
            if self._running.get(key) is me:
                del self._running[key]
