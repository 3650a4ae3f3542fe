"""Stripe payload builders and a fake gateway for tests."""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime

from sqlalchemy import update

from paygate.errors import UpstreamUnavailable
from paygate.models import Profile
from paygate.services.payment_gateway import PaymentGateway

WEBHOOK_SECRET = "whsec_test_secret"
DAY = 86400


def ts(value: datetime | int | float | None = None) -> int:
    if value is None:
        return int(time.time())
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


def stripe_subscription(
    sub_id: str = "sub_test",
    customer: str = "cus_test",
    status: str = "active",
    *,
    start: datetime | int | None = None,
    end: datetime | int | None = None,
    unit_amount: int = 15000,
    quantity: int = 1,
    coupon: dict | None = None,
    cancel_at_period_end: bool = False,
    canceled_at: int | None = None,
    created: int | None = None,
    price_id: str = "price_monthly",
    product: str = "prod_pro",
) -> dict:
    """A subscription shaped like newer API versions (period bounds on the item)."""
    now = ts()
    start = ts(start) if start is not None else now - DAY
    end = ts(end) if end is not None else now + 29 * DAY
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "created": created if created is not None else start,
        "start_date": start,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": canceled_at,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{sub_id}",
                    "current_period_start": start,
                    "current_period_end": end,
                    "quantity": quantity,
                    "price": {"id": price_id, "unit_amount": unit_amount, "product": product},
                }
            ],
        },
        "discounts": [{"coupon": coupon, "end": None}] if coupon else [],
    }


def checkout_session(
    session_id: str = "cs_test",
    customer: str | None = "cus_test",
    *,
    created: int | None = None,
    amount_total: int = 9900,
    amount_subtotal: int = 9900,
    amount_discount: int = 0,
    amount_tax: int = 0,
    payment_status: str = "paid",
    subscription: str | None = None,
    email: str | None = None,
) -> dict:
    return {
        "id": session_id,
        "object": "checkout.session",
        "customer": customer,
        "status": "complete",
        "payment_status": payment_status,
        "subscription": subscription,
        "created": created if created is not None else ts(),
        "amount_total": amount_total,
        "amount_subtotal": amount_subtotal,
        "total_details": {"amount_discount": amount_discount, "amount_tax": amount_tax, "amount_shipping": 0},
        "customer_details": {"email": email} if email else None,
    }


def stripe_event(event_id: str, event_type: str, obj: dict, created: int | None = None) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else ts(),
        "data": {"object": obj},
    }


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    t = timestamp or ts()
    digest = hmac.new(secret.encode(), f"{t}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={t},v1={digest}"


def encode(event: dict) -> tuple[bytes, str]:
    payload = json.dumps(event).encode()
    return payload, sign(payload)


class FakeGateway(PaymentGateway):
    """In-memory Stripe. Webhook verification is the real one."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET, timeout=1.0)
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, list[dict]] = {}
        self.checkouts: dict[str, list[dict]] = {}
        self.coupons: list[dict] = []
        self.prices: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.unavailable = False
        self.delay = 0.0

    async def _hit(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise UpstreamUnavailable("Payment provider timed out")

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def _find(self, subscription_id: str) -> dict | None:
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub["id"] == subscription_id:
                    return sub
        return None

    async def find_customer_by_email(self, email):
        await self._hit("find_customer_by_email", email)
        return self.customers.get(email.lower())

    async def list_subscriptions(self, customer_id, limit=10):
        await self._hit("list_subscriptions", customer_id)
        return [dict(sub) for sub in self.subscriptions.get(customer_id, [])]

    async def list_completed_checkouts(self, *, customer_id=None, email=None, since):
        await self._hit("list_completed_checkouts", customer_id, email)
        return list(self.checkouts.get(customer_id or email, []))

    async def set_cancel_at_period_end(self, subscription_id, cancel):
        await self._hit("set_cancel_at_period_end", subscription_id, cancel)
        sub = self._find(subscription_id) or {"id": subscription_id}
        sub["cancel_at_period_end"] = cancel
        sub["canceled_at"] = ts() if cancel else None
        return sub

    async def cancel_subscription(self, subscription_id):
        await self._hit("cancel_subscription", subscription_id)
        sub = self._find(subscription_id)
        if sub is None:
            return None
        sub["status"] = "canceled"
        sub["canceled_at"] = ts()
        return sub

    async def retrieve_price(self, price_id):
        await self._hit("retrieve_price", price_id)
        return self.prices.get(price_id)

    async def create_coupon(self, percent_off, name):
        await self._hit("create_coupon", percent_off, name)
        coupon = {"id": f"coupon_{len(self.coupons) + 1}", "percent_off": percent_off, "name": name}
        self.coupons.append(coupon)
        return coupon

    async def apply_coupon(self, subscription_id, coupon_id):
        await self._hit("apply_coupon", subscription_id, coupon_id)
        return {"id": subscription_id, "discounts": [{"coupon": coupon_id}]}


async def seed_profile(
    session_factory,
    identity: str = "user-1",
    email: str | None = "user@example.com",
    **fields,
) -> Profile:
    """Insert a profile and set subscription fields directly, bypassing the engine."""
    async with session_factory() as db:
        profile = Profile(external_identity_id=identity, email=email)
        db.add(profile)
        await db.commit()
        if fields:
            await db.execute(update(Profile).where(Profile.id == profile.id).values(**fields))
            await db.commit()
        return await db.get(Profile, profile.id, populate_existing=True)
