"""ARQ worker — webhook processing and periodic maintenance."""

import logging
from datetime import timedelta

from arq import Retry, cron
from arq.connections import RedisSettings
from sqlalchemy import delete

from paygate.config import get_settings
from paygate.constants import (
    ARQ_JOB_TIMEOUT,
    ARQ_MAX_JOBS,
    STALE_RECONCILE_BATCH,
    WEBHOOK_EVENT_RETENTION_DAYS,
    WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_RETRY_BASE_SECONDS,
)
from paygate.errors import PaygateError, UpstreamUnavailable
from paygate.models import WebhookEvent
from paygate.services.concurrency import RedisKeyedLock
from paygate.services.reconciliation import Trigger
from paygate.utils import now_utc, setup_logging

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    from paygate.container import build_container
    from paygate.db.session import async_session_factory

    setup_logging()
    ctx["container"] = build_container(
        get_settings(),
        async_session_factory,
        processor_locks=RedisKeyedLock(ctx["redis"], prefix="paygate:customer"),
    )


async def shutdown(ctx: dict) -> None:
    from paygate.db.session import engine

    container = ctx.get("container")
    if container is not None:
        await container.close()
    await engine.dispose()


async def process_webhook_event_job(ctx: dict, event_id: str) -> str:
    """ARQ job: process one recorded Stripe event, retrying while Stripe is unavailable."""
    processor = ctx["container"].processor
    try:
        return await processor.process(event_id)
    except UpstreamUnavailable:
        tries = ctx.get("job_try", 1)
        if tries >= WEBHOOK_MAX_ATTEMPTS:
            logger.error("Webhook event %s failed after %d attempts", event_id, tries)
            raise
        raise Retry(defer=WEBHOOK_RETRY_BASE_SECONDS * 2 ** (tries - 1))


async def expire_lapsed_job(ctx: dict) -> int:
    """Cron: expire un-renewed profiles and re-check ones that should have renewed."""
    container = ctx["container"]
    expired = await container.engine.expire_lapsed()

    stale = await container.profile_store.list_stale_auto_renew(now_utc(), STALE_RECONCILE_BATCH)
    for profile in stale:
        try:
            await container.engine.reconcile(profile_id=profile.id, trigger=Trigger.SCHEDULED)
        except PaygateError as e:
            logger.warning("Scheduled reconcile of profile %s failed: %s", profile.id, e.message)
    if stale:
        logger.info("Re-checked %d profiles past renewal date", len(stale))
    return expired


async def cleanup_offers_job(ctx: dict) -> int:
    """Cron: delete expired, never-accepted discount offers."""
    return await ctx["container"].offers.cleanup_expired()


async def prune_webhook_events_job(ctx: dict) -> int:
    """Cron: drop outbox rows older than the provider's redelivery window (with margin)."""
    cutoff = now_utc() - timedelta(days=WEBHOOK_EVENT_RETENTION_DAYS)
    async with ctx["container"].session_factory() as db:
        result = await db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.received_at < cutoff,
                WebhookEvent.status.in_(["processed", "skipped"]),
            )
        )
        await db.commit()
    logger.info("Pruned %d webhook events older than %s", result.rowcount, cutoff.date())
    return result.rowcount


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [process_webhook_event_job]
    cron_jobs = [
        cron(expire_lapsed_job, minute={0, 15, 30, 45}),
        cron(cleanup_offers_job, hour=3, minute=0),
        cron(prune_webhook_events_job, hour=4, minute=0),
    ]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(get_settings().redis_url or "redis://localhost:6379")

    max_jobs = ARQ_MAX_JOBS
    job_timeout = ARQ_JOB_TIMEOUT
    max_tries = WEBHOOK_MAX_ATTEMPTS
    keep_result = 0
