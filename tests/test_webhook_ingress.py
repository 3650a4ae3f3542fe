"""Tests for webhook verification, the event outbox and per-customer processing."""

import asyncio

import pytest
from sqlalchemy import func, select

from paygate.errors import InvalidSignature
from paygate.models import Notification, Profile, SubscriptionStatus, WebhookEvent
from paygate.services.webhook_ingress import EventKind, extract_refs, normalize_event_type
from paygate.utils import from_timestamp
from tests.helpers import DAY, encode, seed_profile, sign, stripe_event, stripe_subscription, ts


async def _event_row(session_factory, event_id: str) -> WebhookEvent | None:
    async with session_factory() as db:
        result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        return result.scalar_one_or_none()


async def _deliver(container, event: dict):
    payload, signature = encode(event)
    result = await container.ingress.handle(payload, signature)
    await container.queue.drain()
    return result


class TestEventParsing:
    def test_event_types_are_normalized(self):
        assert normalize_event_type("customer.subscription.deleted") is EventKind.SUBSCRIPTION_DELETED
        assert normalize_event_type("invoice.payment_succeeded") is EventKind.INVOICE_PAID
        assert normalize_event_type("customer.created") is None

    def test_invoice_subscription_under_parent(self):
        invoice = {
            "customer": "cus_1",
            "customer_email": "a@example.com",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }
        refs = extract_refs(EventKind.INVOICE_PAID, invoice)
        assert (refs.customer_id, refs.subscription_id, refs.email) == ("cus_1", "sub_1", "a@example.com")

    def test_checkout_email_from_customer_details(self):
        session = {"customer": None, "customer_details": {"email": "b@example.com"}, "subscription": None}
        refs = extract_refs(EventKind.CHECKOUT_COMPLETED, session)
        assert refs.email == "b@example.com"
        assert refs.customer_id is None


class TestIngress:
    async def test_bad_signature_is_rejected(self, container):
        payload, _ = encode(stripe_event("evt_1", "customer.subscription.updated", stripe_subscription()))

        with pytest.raises(InvalidSignature):
            await container.ingress.handle(payload, sign(payload, secret="whsec_wrong"))
        assert await _event_row(container.session_factory, "evt_1") is None

    async def test_missing_signature_is_rejected(self, container):
        payload, _ = encode(stripe_event("evt_1", "customer.subscription.updated", stripe_subscription()))
        with pytest.raises(InvalidSignature):
            await container.ingress.handle(payload, None)

    async def test_unknown_event_type_is_acknowledged(self, container):
        result = await _deliver(container, stripe_event("evt_x", "customer.created", {"id": "cus_1"}))

        assert result.status == "ignored"
        assert await _event_row(container.session_factory, "evt_x") is None

    async def test_subscription_event_reconciles_profile(self, container, gateway, session_factory):
        profile = await seed_profile(session_factory, payment_customer_id="cus_1")
        sub = stripe_subscription("sub_1", "cus_1")
        gateway.subscriptions["cus_1"] = [sub]

        result = await _deliver(container, stripe_event("evt_1", "customer.subscription.created", sub))

        assert result.status == "queued"
        stored = await container.profile_store.get(profile.id)
        assert stored.status is SubscriptionStatus.ACTIVE
        row = await _event_row(session_factory, "evt_1")
        assert row.status == "processed"
        assert row.attempts == 1

    async def test_duplicate_delivery_is_not_reprocessed(self, container, gateway, session_factory):
        await seed_profile(session_factory, payment_customer_id="cus_1")
        sub = stripe_subscription("sub_1", "cus_1")
        gateway.subscriptions["cus_1"] = [sub]
        event = stripe_event("evt_1", "customer.subscription.updated", sub)

        await _deliver(container, event)
        calls = gateway.count("list_subscriptions")
        result = await _deliver(container, event)

        assert result.status == "duplicate"
        assert gateway.count("list_subscriptions") == calls

    async def test_concurrent_runs_of_one_event_reconcile_once(self, container, gateway, session_factory):
        await seed_profile(session_factory, payment_customer_id="cus_1")
        gateway.subscriptions["cus_1"] = [stripe_subscription("sub_1", "cus_1")]
        async with session_factory() as db:
            db.add(WebhookEvent(
                event_id="evt_1",
                event_type="customer.subscription.updated",
                kind=EventKind.SUBSCRIPTION_UPDATED.value,
                customer_id="cus_1",
                subscription_id="sub_1",
                event_created=from_timestamp(ts()),
                payload={},
            ))
            await db.commit()
        gateway.delay = 0.05

        results = await asyncio.gather(
            container.processor.process("evt_1"), container.processor.process("evt_1")
        )

        assert results == ["processed", "processed"]
        assert gateway.count("list_subscriptions") == 1
        assert (await _event_row(session_factory, "evt_1")).attempts == 1

    async def test_unknown_customer_is_a_no_op(self, container, gateway, session_factory):
        sub = stripe_subscription("sub_404", "cus_404")

        result = await _deliver(container, stripe_event("evt_1", "customer.subscription.updated", sub))

        assert result.status == "queued"
        row = await _event_row(session_factory, "evt_1")
        assert row.status == "processed"
        async with session_factory() as db:
            assert await db.scalar(select(func.count(Profile.id))) == 0

    async def test_out_of_order_update_after_delete_is_skipped(self, container, gateway, session_factory):
        now = ts()
        profile = await seed_profile(session_factory, payment_customer_id="cus_1")
        live = stripe_subscription("sub_1", "cus_1")
        ended = stripe_subscription(
            "sub_1", "cus_1", status="canceled", start=now - 30 * DAY, end=now - 60, canceled_at=now - 60
        )
        gateway.subscriptions["cus_1"] = [ended]

        await _deliver(container, stripe_event("evt_deleted", "customer.subscription.deleted", ended, now))
        await _deliver(container, stripe_event("evt_updated", "customer.subscription.updated", live, now - 30))

        stored = await container.profile_store.get(profile.id)
        assert stored.status is SubscriptionStatus.CANCELLED
        assert (await _event_row(session_factory, "evt_updated")).status == "skipped"

    async def test_failed_event_is_retried_on_redelivery(self, container, gateway, session_factory):
        profile = await seed_profile(session_factory, payment_customer_id="cus_1")
        sub = stripe_subscription("sub_1", "cus_1")
        gateway.subscriptions["cus_1"] = [sub]
        event = stripe_event("evt_1", "customer.subscription.updated", sub)

        gateway.unavailable = True
        await _deliver(container, event)
        row = await _event_row(session_factory, "evt_1")
        assert row.status == "failed"
        assert row.last_error

        gateway.unavailable = False
        result = await _deliver(container, event)

        assert result.status == "requeued"
        assert (await _event_row(session_factory, "evt_1")).status == "processed"
        assert (await container.profile_store.get(profile.id)).status is SubscriptionStatus.ACTIVE

    async def test_payment_failure_only_notifies(self, container, gateway, session_factory):
        profile = await seed_profile(session_factory, payment_customer_id="cus_1")
        invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1", "attempt_count": 2}

        await _deliver(container, stripe_event("evt_inv", "invoice.payment_failed", invoice))

        assert gateway.count("list_subscriptions") == 0
        async with session_factory() as db:
            result = await db.execute(select(Notification).where(Notification.profile_id == profile.id))
            assert [n.title for n in result.scalars()] == ["Payment failed"]

    async def test_checkout_completed_links_customer_by_email(self, container, gateway, session_factory):
        profile = await seed_profile(session_factory, email="buyer@example.com")
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "customer": "cus_new",
            "customer_details": {"email": "buyer@example.com"},
            "subscription": "sub_new",
            "status": "complete",
            "payment_status": "paid",
        }
        gateway.subscriptions["cus_new"] = [stripe_subscription("sub_new", "cus_new")]

        await _deliver(container, stripe_event("evt_cs", "checkout.session.completed", session))

        stored = await container.profile_store.get(profile.id)
        assert stored.payment_customer_id == "cus_new"
        assert stored.status is SubscriptionStatus.ACTIVE
