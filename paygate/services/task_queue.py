"""Deferred webhook processing queues.

``ArqTaskQueue`` hands event ids to the ARQ worker through Redis.
``InProcessTaskQueue`` runs them as background tasks in the web process,
used when no Redis URL is configured (local dev, tests).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

logger = logging.getLogger(__name__)

WEBHOOK_JOB = "process_webhook_event_job"


class ArqTaskQueue:
    def __init__(self, redis_url: str):
        self._settings = RedisSettings.from_dsn(redis_url)
        self._redis: ArqRedis | None = None

    async def _pool(self) -> ArqRedis:
        if self._redis is None:
            self._redis = await create_pool(self._settings)
        return self._redis

    async def enqueue(self, event_id: str) -> None:
        redis = await self._pool()
        # Job id doubles as a dedup key while the job is queued
        await redis.enqueue_job(WEBHOOK_JOB, event_id, _job_id=f"webhook:{event_id}")
        logger.debug("Enqueued webhook event %s", event_id)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class InProcessTaskQueue:
    def __init__(self, handler: Callable[[str], Awaitable[object]] | None = None):
        self._handler = handler
        self._tasks: set[asyncio.Task] = set()

    def bind(self, handler: Callable[[str], Awaitable[object]]) -> None:
        self._handler = handler

    async def enqueue(self, event_id: str) -> None:
        if self._handler is None:
            raise RuntimeError("InProcessTaskQueue has no handler bound")
        task = asyncio.create_task(self._run(event_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event_id: str) -> None:
        try:
            await self._handler(event_id)
        except Exception:
            # The outbox row keeps the failure; provider redelivery re-enqueues it
            logger.exception("Webhook event %s failed in-process", event_id)

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
