"""Stripe webhook ingress — verify, record, enqueue; then process in the worker.

The request path only verifies the signature, writes the event to the
``webhook_events`` outbox (unique on the Stripe event id) and enqueues it.
``WebhookProcessor`` runs later, serialized per customer, and hands the event
to the reconciliation engine.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.errors import ProfileNotFound, UpstreamUnavailable
from paygate.models import WebhookEvent
from paygate.services.concurrency import KeyedLock
from paygate.services.notifications import NotificationSink
from paygate.services.payment_gateway import PaymentGateway
from paygate.services.reconciliation import ReconciliationEngine, Trigger
from paygate.utils import from_timestamp, mask_id, now_utc

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    SUBSCRIPTION_CREATED = "SubscriptionCreated"
    SUBSCRIPTION_UPDATED = "SubscriptionUpdated"
    SUBSCRIPTION_DELETED = "SubscriptionDeleted"
    CHECKOUT_COMPLETED = "CheckoutCompleted"
    INVOICE_PAID = "InvoicePaid"
    INVOICE_FAILED = "InvoiceFailed"


EVENT_KINDS = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_FAILED,
}

# Event kinds that only notify and never reconcile
_NOTIFY_ONLY = {EventKind.INVOICE_FAILED}


def normalize_event_type(event_type: str) -> EventKind | None:
    return EVENT_KINDS.get(event_type)


def _ref(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


@dataclass(frozen=True)
class EventRefs:
    customer_id: str | None
    subscription_id: str | None
    email: str | None


def extract_refs(kind: EventKind, obj: dict) -> EventRefs:
    """Pull the customer / subscription / email references out of an event object."""
    customer_id = _ref(obj.get("customer"))
    if kind in (
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
    ):
        return EventRefs(customer_id, obj.get("id"), None)

    if kind is EventKind.CHECKOUT_COMPLETED:
        email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
        return EventRefs(customer_id, _ref(obj.get("subscription")), email)

    # Invoices: newer API versions moved the subscription under parent.subscription_details
    subscription_id = _ref(obj.get("subscription"))
    if subscription_id is None:
        details = (obj.get("parent") or {}).get("subscription_details") or {}
        subscription_id = _ref(details.get("subscription"))
    return EventRefs(customer_id, subscription_id, obj.get("customer_email"))


@dataclass(frozen=True)
class IngressResult:
    event_id: str
    status: str  # queued / requeued / duplicate / ignored


class WebhookIngress:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], gateway: PaymentGateway, queue):
        self._sessions = session_factory
        self._gateway = gateway
        self._queue = queue

    async def handle(self, payload: bytes, signature: str | None) -> IngressResult:
        """Verify and record a webhook delivery, then enqueue it for processing."""
        event = self._gateway.verify_webhook(payload, signature)
        event_id = event["id"]
        event_type = event["type"]

        kind = normalize_event_type(event_type)
        if kind is None:
            logger.debug("Ignoring Stripe event %s (%s)", event_id, event_type)
            return IngressResult(event_id, "ignored")

        obj = event["data"]["object"]
        refs = extract_refs(kind, obj)
        row, created = await self._record(event, kind, refs, obj)

        if not created and row.status in ("processed", "skipped"):
            logger.info("Duplicate Stripe event %s (%s), already %s", event_id, event_type, row.status)
            return IngressResult(event_id, "duplicate")

        await self._queue.enqueue(event_id)
        logger.info(
            "Stripe webhook %s (%s) for customer %s %s",
            event_id, event_type, mask_id(refs.customer_id), "queued" if created else "re-queued",
        )
        return IngressResult(event_id, "queued" if created else "requeued")

    async def _record(
        self, event: dict, kind: EventKind, refs: EventRefs, obj: dict
    ) -> tuple[WebhookEvent, bool]:
        async with self._sessions() as db:
            row = WebhookEvent(
                event_id=event["id"],
                event_type=event["type"],
                kind=kind.value,
                customer_id=refs.customer_id,
                subscription_id=refs.subscription_id,
                customer_email=refs.email.lower() if refs.email else None,
                event_created=from_timestamp(event.get("created")) or now_utc(),
                payload=obj,
            )
            db.add(row)
            try:
                await db.commit()
                return row, True
            except IntegrityError:
                await db.rollback()

        async with self._sessions() as db:
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event["id"]))
            return result.scalar_one(), False


class WebhookProcessor:
    """Processes recorded events, one customer at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: ReconciliationEngine,
        notifier: NotificationSink | None = None,
        locks=None,
    ):
        self._sessions = session_factory
        self._engine = engine
        self._notifier = notifier
        self._locks = locks or KeyedLock()

    async def process(self, event_id: str) -> str:
        """Process one event and return its final outbox status."""
        event = await self._load(event_id)
        if event is None:
            logger.warning("Webhook event %s not found in outbox", event_id)
            return "missing"
        if event.status in ("processed", "skipped"):
            return event.status

        key = event.customer_id or event.subscription_id or event.customer_email or event.event_id
        async with self._locks.hold(key):
            current = await self._load(event_id)
            if current is not None and current.status in ("processed", "skipped"):
                return current.status
            if await self._superseded(event):
                logger.info("Skipping event %s: a newer event for customer %s was processed",
                            event_id, mask_id(event.customer_id))
                await self._mark(event_id, "skipped")
                return "skipped"
            try:
                await self._dispatch(event)
            except UpstreamUnavailable as e:
                await self._mark(event_id, "failed", error=e.message)
                raise
            await self._mark(event_id, "processed")
        return "processed"

    async def _load(self, event_id: str) -> WebhookEvent | None:
        async with self._sessions() as db:
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return result.scalar_one_or_none()

    async def _superseded(self, event: WebhookEvent) -> bool:
        """True when a later reconciling event for the same customer already ran."""
        if not event.customer_id or event.kind in {k.value for k in _NOTIFY_ONLY}:
            return False
        async with self._sessions() as db:
            result = await db.execute(
                select(WebhookEvent.id)
                .where(
                    WebhookEvent.customer_id == event.customer_id,
                    WebhookEvent.status == "processed",
                    WebhookEvent.event_created > event.event_created,
                    WebhookEvent.kind.not_in([k.value for k in _NOTIFY_ONLY]),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def _dispatch(self, event: WebhookEvent) -> None:
        kind = EventKind(event.kind)
        if kind is EventKind.INVOICE_FAILED:
            await self._payment_failed(event)
            return

        trigger = Trigger.CHECKOUT if kind is EventKind.CHECKOUT_COMPLETED else Trigger.WEBHOOK
        try:
            await self._engine.reconcile(
                customer_id=event.customer_id,
                subscription_id=event.subscription_id,
                email=event.customer_email,
                trigger=trigger,
            )
        except ProfileNotFound:
            logger.info("No profile for %s event (customer %s), nothing to do",
                        kind.value, mask_id(event.customer_id))

    async def _payment_failed(self, event: WebhookEvent) -> None:
        """Payment retries are left to Stripe; access is not revoked here."""
        profile = await self._engine.resolve_profile(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            email=event.customer_email,
        )
        if profile is None:
            logger.info("Payment failed for unknown customer %s", mask_id(event.customer_id))
            return
        attempts = (event.payload or {}).get("attempt_count") or 1
        logger.warning("Payment failed for profile %s (attempt %s)", profile.id, attempts)
        if self._notifier:
            await self._notifier.notify(
                profile.id,
                "Payment failed",
                "We couldn't process your latest payment. We'll retry automatically; "
                "please check your payment method to keep access.",
                email=profile.email,
            )

    async def _mark(self, event_id: str, status: str, error: str | None = None) -> None:
        values: dict[str, Any] = {
            "status": status,
            "attempts": WebhookEvent.attempts + 1,
            "last_error": error,
        }
        if status in ("processed", "skipped"):
            values["processed_at"] = now_utc()
        async with self._sessions() as db:
            await db.execute(update(WebhookEvent).where(WebhookEvent.event_id == event_id).values(**values))
            await db.commit()
