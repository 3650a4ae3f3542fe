"""Service wiring shared by the web app, the worker and the CLI."""

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.config import Settings
from paygate.services.access_gate import AccessGate
from paygate.services.admin_service import AdminService
from paygate.services.discount_offers import DiscountOfferStore
from paygate.services.notifications import NotificationSink
from paygate.services.payment_gateway import PaymentGateway
from paygate.services.plan_catalog import PlanCatalog
from paygate.services.profile_store import ProfileStore
from paygate.services.reconciliation import ReconciliationEngine
from paygate.services.task_queue import ArqTaskQueue, InProcessTaskQueue
from paygate.services.timer_service import TimerService
from paygate.services.trial_manager import TrialManager
from paygate.services.webhook_ingress import WebhookIngress, WebhookProcessor


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the application lifecycle."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    plans: PlanCatalog
    notifier: NotificationSink
    profile_store: ProfileStore
    engine: ReconciliationEngine
    access_gate: AccessGate
    trials: TrialManager
    offers: DiscountOfferStore
    timer: TimerService
    admin: AdminService
    queue: ArqTaskQueue | InProcessTaskQueue
    ingress: WebhookIngress
    processor: WebhookProcessor

    async def close(self) -> None:
        await self.queue.close()
        self.access_gate.clear()
        self.plans.clear()


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    gateway: PaymentGateway | None = None,
    queue: ArqTaskQueue | InProcessTaskQueue | None = None,
    processor_locks=None,
) -> ApplicationContainer:
    gateway = gateway or PaymentGateway(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        timeout=settings.stripe_timeout_seconds,
    )
    notifier = NotificationSink(session_factory, settings.resend_api_key, settings.email_from)
    store = ProfileStore(session_factory)
    engine = ReconciliationEngine(store, gateway, notifier)
    gate = AccessGate.from_settings(settings, store, engine)
    processor = WebhookProcessor(session_factory, engine, notifier, locks=processor_locks)

    if queue is None:
        queue = ArqTaskQueue(settings.redis_url) if settings.redis_url else InProcessTaskQueue()
    if isinstance(queue, InProcessTaskQueue):
        queue.bind(processor.process)

    return ApplicationContainer(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        plans=PlanCatalog(gateway),
        notifier=notifier,
        profile_store=store,
        engine=engine,
        access_gate=gate,
        trials=TrialManager(engine, gateway, notifier),
        offers=DiscountOfferStore(session_factory),
        timer=TimerService(session_factory),
        admin=AdminService(store, engine, gateway, gate),
        queue=queue,
        ingress=WebhookIngress(session_factory, gateway, queue),
        processor=processor,
    )


def get_container(request: Request) -> ApplicationContainer:
    """FastAPI dependency: the container created in the app lifespan."""
    return request.app.state.container
