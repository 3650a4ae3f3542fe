"""Subscription snapshot — the typed result of reading Stripe state for one customer.

Everything that turns raw Stripe objects into profile fields lives here so the
derivation is done once, by the reconciliation engine, and nowhere else.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from paygate.constants import (
    CHECKOUT_ACCESS_DAYS,
    PAID_CHECKOUT_STATUSES,
    PAYMENT_RETRY_GRACE_DAYS,
)
from paygate.errors import UpstreamUnavailable
from paygate.models.profile import Profile, SubscriptionStatus
from paygate.utils import from_timestamp


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Canonical subscription state for one profile at one point in time."""

    status: SubscriptionStatus
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    price_id: str | None = None
    product_id: str | None = None
    subscription_amount: int | None = None
    original_amount: int | None = None
    discount_percent: int | None = None
    discount_name: str | None = None
    auto_renew: bool = False
    cancelled_at: datetime | None = None
    source: str = "none"  # subscription / checkout / grant / trial / none

    def ensure_writable(self, now: datetime) -> None:
        """Reject snapshots that would store ACTIVE without a future end date."""
        if self.status is SubscriptionStatus.ACTIVE and (
            self.subscription_end is None or self.subscription_end <= now
        ):
            raise UpstreamUnavailable("Incomplete subscription data from payment provider")
        if (
            self.original_amount is not None
            and self.subscription_amount is not None
            and self.subscription_amount > self.original_amount
        ):
            raise UpstreamUnavailable("Inconsistent subscription amounts from payment provider")

    def profile_values(self) -> dict[str, Any]:
        """Map snapshot fields onto Profile column names."""
        return {
            "subscription_status": self.status.value,
            "subscription_start": self.subscription_start,
            "subscription_end": self.subscription_end,
            "payment_customer_id": self.customer_id,
            "payment_subscription_id": self.subscription_id,
            "payment_price_id": self.price_id,
            "payment_product_id": self.product_id,
            "subscription_amount": self.subscription_amount,
            "original_amount": self.original_amount,
            "discount_percent": self.discount_percent,
            "discount_name": self.discount_name,
            "subscription_auto_renew": self.auto_renew,
            "subscription_cancelled_at": self.cancelled_at,
        }


# --- Stripe field extraction ---


def _first_item(stripe_sub: dict) -> dict | None:
    try:
        return stripe_sub["items"]["data"][0]
    except (KeyError, TypeError, IndexError):
        return None


def period_bounds(stripe_sub: dict) -> tuple[datetime | None, datetime | None]:
    """Extract current_period_start/end, handling Stripe API version differences.

    Newer API versions (2024-06-20+) moved these fields to items.data[0], and
    event payloads are not always consistent, so both places are checked.
    """
    start = stripe_sub.get("current_period_start")
    end = stripe_sub.get("current_period_end")
    item = _first_item(stripe_sub)
    if item:
        start = start or item.get("current_period_start")
        end = end or item.get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _coupon_of(discount: Any) -> dict | None:
    if not isinstance(discount, dict):
        return None
    coupon = discount.get("coupon")
    if coupon is None:
        # 2025 API versions nest the coupon under discount.source
        coupon = (discount.get("source") or {}).get("coupon")
    return coupon if isinstance(coupon, dict) else None


def active_coupon(stripe_sub: dict, now: datetime) -> dict | None:
    """Return the coupon currently discounting the subscription, if any."""
    candidates = list(stripe_sub.get("discounts") or [])
    if stripe_sub.get("discount"):
        candidates.append(stripe_sub["discount"])
    for discount in candidates:
        coupon = _coupon_of(discount)
        if coupon is None:
            continue
        ends = from_timestamp(discount.get("end"))
        if ends is not None and ends <= now:
            continue
        if coupon.get("valid") is False and ends is None:
            continue
        return coupon
    return None


def product_ref(price: dict) -> str | None:
    """Product id of a price; the product may be expanded or a bare id."""
    product = price.get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def derive_amounts(
    stripe_sub: dict, coupon: dict | None
) -> tuple[int | None, int | None, int | None, str | None]:
    """Return (original_amount, charged_amount, discount_percent, discount_name).

    The original amount is the undiscounted unit amount times quantity; the
    charged amount has the coupon applied.
    """
    item = _first_item(stripe_sub)
    price = (item or {}).get("price") or stripe_sub.get("plan") or {}
    unit_amount = price.get("unit_amount")
    if unit_amount is None:
        return None, None, None, None
    original = int(unit_amount) * int((item or {}).get("quantity") or 1)

    if coupon is None:
        return original, original, None, None

    name = coupon.get("name") or coupon.get("id")
    percent_off = coupon.get("percent_off")
    amount_off = coupon.get("amount_off")
    if percent_off:
        percent = Decimal(str(percent_off))
        reduction = _round_half_up(Decimal(original) * percent / Decimal(100))
        charged = max(original - reduction, 0)
        return original, charged, _round_half_up(percent), name
    if amount_off:
        charged = max(original - int(amount_off), 0)
        percent = _round_half_up(Decimal(original - charged) * 100 / Decimal(original)) if original else 0
        return original, charged, percent, name
    return original, original, None, None


def _created(stripe_obj: dict) -> int:
    return stripe_obj.get("created") or 0


def paid_through(stripe_sub: dict) -> datetime | None:
    return period_bounds(stripe_sub)[1]


def select_canonical(
    subscriptions: list[dict], now: datetime, revoked_at: datetime | None = None
) -> dict | None:
    """Pick the authoritative subscription among a customer's subscriptions.

    Precedence: active, trialing, past_due still inside the payment retry
    window, then the most recently created canceled subscription whose paid
    period has not ended yet. Subscriptions cancelled before an admin revoked
    access get no grace period.
    """
    newest_first = sorted(subscriptions, key=_created, reverse=True)
    for status in ("active", "trialing"):
        for sub in newest_first:
            if sub.get("status") == status:
                return sub
    for sub in newest_first:
        if sub.get("status") == "past_due" and _retry_grace_end(sub, now) is not None:
            return sub
    for sub in newest_first:
        if sub.get("status") != "canceled":
            continue
        if _cancelled_by_revocation(sub, revoked_at):
            continue
        end = paid_through(sub)
        if end is not None and end > now:
            return sub
    return None


def _cancelled_by_revocation(stripe_sub: dict, revoked_at: datetime | None) -> bool:
    if revoked_at is None:
        return False
    cancelled_at = from_timestamp(stripe_sub.get("canceled_at"))
    return cancelled_at is None or cancelled_at <= revoked_at


def _retry_grace_end(stripe_sub: dict, now: datetime) -> datetime | None:
    """End of access for a past_due subscription, or None when the retry window closed."""
    start, end = period_bounds(stripe_sub)
    if start is None or end is None:
        return None
    grace_end = min(end, start + timedelta(days=PAYMENT_RETRY_GRACE_DAYS))
    return grace_end if grace_end > now else None


def snapshot_from_subscription(
    stripe_sub: dict, customer_id: str | None, now: datetime
) -> SubscriptionSnapshot:
    start, end = period_bounds(stripe_sub)
    status = stripe_sub.get("status")
    if status == "past_due":
        end = _retry_grace_end(stripe_sub, now) or end

    original, charged, percent, name = derive_amounts(stripe_sub, active_coupon(stripe_sub, now))
    item = _first_item(stripe_sub) or {}
    canceled = status == "canceled"
    cancelled_at = from_timestamp(stripe_sub.get("canceled_at"))
    auto_renew = not canceled and not stripe_sub.get("cancel_at_period_end", False)

    return SubscriptionSnapshot(
        status=SubscriptionStatus.ACTIVE,
        subscription_start=from_timestamp(stripe_sub.get("start_date")) or start,
        subscription_end=end,
        customer_id=customer_id or _customer_ref(stripe_sub),
        subscription_id=stripe_sub.get("id"),
        price_id=(item.get("price") or {}).get("id"),
        product_id=product_ref(item.get("price") or {}),
        subscription_amount=charged,
        original_amount=original,
        discount_percent=percent,
        discount_name=name,
        auto_renew=auto_renew,
        cancelled_at=cancelled_at if (canceled or not auto_renew) else None,
        source="subscription",
    )


def _customer_ref(stripe_obj: dict) -> str | None:
    customer = stripe_obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def checkout_window(
    sessions: list[dict], now: datetime, revoked_at: datetime | None = None
) -> dict | None:
    """Most recent completed one-time checkout whose access window is still open.

    Only sessions that did not create a recurring subscription qualify; the
    window is anchored at the session's creation, not at the time of the check.
    """
    window = timedelta(days=CHECKOUT_ACCESS_DAYS)
    for session in sorted(sessions, key=_created, reverse=True):
        if session.get("status") != "complete":
            continue
        if session.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            continue
        if session.get("subscription"):
            continue
        created = from_timestamp(_created(session))
        if revoked_at is not None and created is not None and created <= revoked_at:
            continue
        if created is not None and created + window > now:
            return session
    return None


def snapshot_from_checkout(
    session: dict, customer_id: str | None
) -> SubscriptionSnapshot:
    created = from_timestamp(_created(session))
    subtotal = session.get("amount_subtotal")
    charged = None
    percent = None
    if subtotal is not None:
        # amount_total includes tax and shipping; the charged price is the
        # subtotal less discounts
        discount = int((session.get("total_details") or {}).get("amount_discount") or 0)
        charged = max(int(subtotal) - discount, 0)
        if subtotal and discount:
            percent = _round_half_up(Decimal(subtotal - charged) * 100 / Decimal(subtotal))
    return SubscriptionSnapshot(
        status=SubscriptionStatus.ACTIVE,
        subscription_start=created,
        subscription_end=created + timedelta(days=CHECKOUT_ACCESS_DAYS),
        customer_id=customer_id or _customer_ref(session),
        subscription_amount=charged,
        original_amount=subtotal,
        discount_percent=percent,
        auto_renew=False,
        source="checkout",
    )


def build_snapshot(
    *,
    customer_id: str | None,
    subscriptions: list[dict],
    checkouts: list[dict],
    profile: Profile,
    now: datetime,
) -> SubscriptionSnapshot:
    """Derive the snapshot to store for a profile from fetched Stripe data."""
    revoked_at = profile.access_revoked_at
    canonical = select_canonical(subscriptions, now, revoked_at)
    if canonical is not None:
        return snapshot_from_subscription(canonical, customer_id, now)

    session = checkout_window(checkouts, now, revoked_at)
    if session is not None:
        return snapshot_from_checkout(session, customer_id)

    if profile.access_granted_until and profile.access_granted_until > now:
        return SubscriptionSnapshot(
            status=SubscriptionStatus.ACTIVE,
            subscription_start=profile.subscription_start or now,
            subscription_end=profile.access_granted_until,
            customer_id=customer_id,
            source="grant",
        )

    if profile.trial_used and profile.trial_end and profile.trial_end > now:
        return SubscriptionSnapshot(
            status=SubscriptionStatus.ACTIVE,
            subscription_start=profile.subscription_start,
            subscription_end=profile.trial_end,
            customer_id=customer_id,
            source="trial",
        )

    if not subscriptions:
        had_access = profile.trial_used or profile.access_granted_until or revoked_at
        status = SubscriptionStatus.EXPIRED if had_access else SubscriptionStatus.FREE
        return SubscriptionSnapshot(status=status, customer_id=customer_id)

    latest = max(subscriptions, key=_created)
    status = (
        SubscriptionStatus.CANCELLED if latest.get("status") == "canceled" else SubscriptionStatus.EXPIRED
    )
    return SubscriptionSnapshot(
        status=status,
        subscription_start=from_timestamp(latest.get("start_date")),
        subscription_end=paid_through(latest),
        customer_id=customer_id,
        subscription_id=latest.get("id"),
        cancelled_at=from_timestamp(latest.get("canceled_at")),
    )
