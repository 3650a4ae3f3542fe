"""Retention discount offers — issued during cancellation, accepted at most once."""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.constants import (
    OFFER_MAX_DISCOUNT_PERCENT,
    OFFER_MIN_DISCOUNT_PERCENT,
    OFFER_MIN_PRICE_CENTS,
    OFFER_TTL_HOURS,
)
from paygate.errors import (
    Forbidden,
    NotFound,
    OfferAlreadyAccepted,
    OfferExpired,
    ValidationError,
)
from paygate.models import DiscountOffer, Profile
from paygate.services.payment_gateway import PaymentGateway
from paygate.utils import mask_id, now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OfferTerms:
    offer_price_cents: int
    discount_percent: float
    savings_cents: int


@dataclass(frozen=True)
class AcceptedOffer:
    offer: DiscountOffer
    apply_coupon: dict[str, Any]


def calculate_offer(user_input_cents: int, rng: random.Random | None = None) -> OfferTerms:
    """Counter-offer a random 5–10% off the user's proposed price, never below $20."""
    if user_input_cents <= 0:
        raise ValidationError("Proposed price must be greater than 0")
    if user_input_cents <= OFFER_MIN_PRICE_CENTS:
        return OfferTerms(offer_price_cents=OFFER_MIN_PRICE_CENTS, discount_percent=0.0, savings_cents=0)

    rng = rng or random
    percent = round(rng.uniform(OFFER_MIN_DISCOUNT_PERCENT, OFFER_MAX_DISCOUNT_PERCENT), 2)
    offer = user_input_cents - round(user_input_cents * percent / 100)
    offer = max(offer, OFFER_MIN_PRICE_CENTS)
    savings = user_input_cents - offer
    actual_percent = round(savings / user_input_cents * 100, 2) if savings > 0 else 0.0
    return OfferTerms(offer_price_cents=offer, discount_percent=actual_percent, savings_cents=savings)


class DiscountOfferStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta = timedelta(hours=OFFER_TTL_HOURS),
    ):
        self._sessions = session_factory
        self._ttl = ttl

    async def store_rejected_offer(
        self,
        profile_id: int,
        subscription_id: str,
        *,
        original_price_cents: int,
        user_input_cents: int,
        offer_price_cents: int,
        discount_percent: float,
    ) -> DiscountOffer:
        """Save (or replace) the offer for a subscription; acceptance is reset."""
        if not subscription_id:
            raise ValidationError("Subscription ID is required")
        if min(original_price_cents, user_input_cents, offer_price_cents) <= 0:
            raise ValidationError("Prices must be greater than 0")
        if not 0 <= discount_percent <= 100:
            raise ValidationError("Discount percent must be between 0 and 100")
        if not offer_price_cents < user_input_cents < original_price_cents:
            raise ValidationError("Offer must be below the proposed price, which must be below the current price")

        now = now_utc()
        async with self._sessions() as db:
            async with db.begin():
                result = await db.execute(
                    select(DiscountOffer)
                    .where(
                        DiscountOffer.profile_id == profile_id,
                        DiscountOffer.payment_subscription_id == subscription_id,
                    )
                    .with_for_update()
                )
                offer = result.scalar_one_or_none()
                if offer is None:
                    offer = DiscountOffer(profile_id=profile_id, payment_subscription_id=subscription_id)
                    db.add(offer)
                offer.original_price_cents = original_price_cents
                offer.user_input_cents = user_input_cents
                offer.offer_price_cents = offer_price_cents
                offer.discount_percent = discount_percent
                offer.savings_cents = user_input_cents - offer_price_cents
                offer.expires_at = now + self._ttl
                offer.accepted_at = None
        logger.info("Stored discount offer %s for profile %s (%s)", offer.id, profile_id, mask_id(subscription_id))
        return offer

    async def get_active_offer(self, profile_id: int, subscription_id: str) -> DiscountOffer | None:
        async with self._sessions() as db:
            result = await db.execute(
                select(DiscountOffer).where(
                    DiscountOffer.profile_id == profile_id,
                    DiscountOffer.payment_subscription_id == subscription_id,
                    DiscountOffer.accepted_at.is_(None),
                    DiscountOffer.expires_at > now_utc(),
                )
            )
            return result.scalar_one_or_none()

    async def get(self, offer_id: int) -> DiscountOffer | None:
        async with self._sessions() as db:
            return await db.get(DiscountOffer, offer_id)

    async def accept_offer(self, offer_id: int, profile_id: int) -> AcceptedOffer:
        """Accept once. Both conditions are re-checked inside the UPDATE."""
        offer = await self.get(offer_id)
        if offer is None:
            raise NotFound("Offer not found")
        if offer.profile_id != profile_id:
            raise Forbidden("Offer belongs to another account")

        now = now_utc()
        async with self._sessions() as db:
            result = await db.execute(
                update(DiscountOffer)
                .where(
                    DiscountOffer.id == offer_id,
                    DiscountOffer.accepted_at.is_(None),
                    DiscountOffer.expires_at > now,
                )
                .values(accepted_at=now, updated_at=now)
            )
            await db.commit()

        if result.rowcount != 1:
            current = await self.get(offer_id)
            if current is None:
                raise NotFound("Offer not found")
            if current.accepted_at is not None:
                raise OfferAlreadyAccepted()
            raise OfferExpired()

        accepted = await self.get(offer_id)
        logger.info("Discount offer %s accepted by profile %s", offer_id, profile_id)
        return AcceptedOffer(offer=accepted, apply_coupon=apply_coupon_data(accepted))

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete expired offers that were never accepted."""
        async with self._sessions() as db:
            result = await db.execute(
                delete(DiscountOffer).where(
                    DiscountOffer.accepted_at.is_(None),
                    DiscountOffer.expires_at < (now or now_utc()),
                )
            )
            await db.commit()
        if result.rowcount:
            logger.info("Cleaned up %d expired discount offers", result.rowcount)
        return result.rowcount

    async def stats(self) -> dict[str, Any]:
        now = now_utc()
        async with self._sessions() as db:
            total = await db.scalar(select(func.count(DiscountOffer.id)))
            active = await db.scalar(
                select(func.count(DiscountOffer.id)).where(
                    DiscountOffer.accepted_at.is_(None), DiscountOffer.expires_at > now
                )
            )
            expired = await db.scalar(
                select(func.count(DiscountOffer.id)).where(
                    DiscountOffer.accepted_at.is_(None), DiscountOffer.expires_at <= now
                )
            )
            accepted = await db.scalar(
                select(func.count(DiscountOffer.id)).where(DiscountOffer.accepted_at.is_not(None))
            )
            avg_discount = await db.scalar(select(func.avg(DiscountOffer.discount_percent)))
        return {
            "total_offers": total or 0,
            "active_offers": active or 0,
            "expired_offers": expired or 0,
            "accepted_offers": accepted or 0,
            "avg_discount_percent": round(float(avg_discount or 0), 2),
        }


def apply_coupon_data(offer: DiscountOffer) -> dict[str, Any]:
    """Coupon parameters that take the subscription from its current price to the offer price."""
    percent_off = round((offer.original_price_cents - offer.offer_price_cents) / offer.original_price_cents * 100, 2)
    return {
        "subscription_id": offer.payment_subscription_id,
        "percent_off": percent_off,
        "offer_price_cents": offer.offer_price_cents,
        "original_price_cents": offer.original_price_cents,
        "coupon_name": f"Retention offer ${offer.offer_price_cents / 100:.2f}",
    }


async def apply_accepted_offer(
    offers: DiscountOfferStore, gateway: PaymentGateway, profile: Profile, offer_id: int
) -> dict[str, Any]:
    """Create a one-off coupon for an accepted offer and attach it to the subscription.

    The profile's amounts update later, when the subscription webhook arrives.
    """
    offer = await offers.get(offer_id)
    if offer is None:
        raise NotFound("Offer not found")
    if offer.profile_id != profile.id:
        raise Forbidden("Offer belongs to another account")
    if offer.accepted_at is None:
        raise ValidationError("Offer must be accepted first")
    if profile.payment_subscription_id != offer.payment_subscription_id:
        raise ValidationError("Offer does not match the current subscription")

    data = apply_coupon_data(offer)
    coupon = await gateway.create_coupon(data["percent_off"], data["coupon_name"])
    await gateway.apply_coupon(offer.payment_subscription_id, coupon["id"])
    logger.info("Applied coupon %s for offer %s", coupon["id"], offer_id)
    return {**data, "coupon_id": coupon["id"]}
