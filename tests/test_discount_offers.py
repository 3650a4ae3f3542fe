"""Tests for retention offer pricing, storage and one-time acceptance."""

import asyncio
import random
from datetime import timedelta
from unittest.mock import Mock

import pytest

from paygate.errors import (
    Forbidden,
    NotFound,
    OfferAlreadyAccepted,
    OfferExpired,
    ValidationError,
)
from paygate.services.discount_offers import (
    DiscountOfferStore,
    apply_accepted_offer,
    apply_coupon_data,
    calculate_offer,
)
from paygate.utils import now_utc
from tests.helpers import seed_profile


async def _offer(offers, profile_id, subscription_id="sub_1", **overrides):
    values = {
        "original_price_cents": 15000,
        "user_input_cents": 12000,
        "offer_price_cents": 11000,
        "discount_percent": 8.33,
    }
    values.update(overrides)
    return await offers.store_rejected_offer(profile_id, subscription_id, **values)


class TestCalculateOffer:
    def test_discount_is_between_five_and_ten_percent(self):
        rng = random.Random(42)
        for _ in range(50):
            terms = calculate_offer(10000, rng)
            assert 5.0 <= terms.discount_percent <= 10.0
            assert terms.offer_price_cents + terms.savings_cents == 10000

    def test_input_at_floor_gets_floor_price(self):
        terms = calculate_offer(1500)
        assert (terms.offer_price_cents, terms.discount_percent, terms.savings_cents) == (2000, 0.0, 0)

    def test_offer_never_drops_below_floor(self):
        terms = calculate_offer(2100, Mock(uniform=Mock(return_value=10.0)))

        assert terms.offer_price_cents == 2000
        assert terms.savings_cents == 100
        assert terms.discount_percent == 4.76

    def test_non_positive_input_is_rejected(self):
        with pytest.raises(ValidationError):
            calculate_offer(0)


class TestOfferStore:
    async def test_store_and_fetch_active_offer(self, container, session_factory):
        profile = await seed_profile(session_factory)
        offer = await _offer(container.offers, profile.id)

        active = await container.offers.get_active_offer(profile.id, "sub_1")

        assert active.id == offer.id
        assert active.savings_cents == 1000
        assert active.expires_at - now_utc() > timedelta(hours=47)

    async def test_storing_again_replaces_offer(self, container, session_factory):
        profile = await seed_profile(session_factory)
        first = await _offer(container.offers, profile.id)
        await container.offers.accept_offer(first.id, profile.id)

        second = await _offer(container.offers, profile.id, offer_price_cents=10500)

        assert second.id == first.id
        assert second.accepted_at is None
        assert second.offer_price_cents == 10500

    @pytest.mark.parametrize(
        "overrides",
        [
            {"user_input_cents": 16000},
            {"offer_price_cents": 12000},
            {"discount_percent": 120},
            {"original_price_cents": 0},
        ],
    )
    async def test_invalid_offers_are_rejected(self, container, session_factory, overrides):
        profile = await seed_profile(session_factory)
        with pytest.raises(ValidationError):
            await _offer(container.offers, profile.id, **overrides)

    async def test_offer_is_accepted_once(self, container, session_factory):
        profile = await seed_profile(session_factory)
        offer = await _offer(container.offers, profile.id)

        accepted = await container.offers.accept_offer(offer.id, profile.id)

        assert accepted.offer.accepted_at is not None
        assert accepted.apply_coupon["percent_off"] == round(4000 / 15000 * 100, 2)
        with pytest.raises(OfferAlreadyAccepted):
            await container.offers.accept_offer(offer.id, profile.id)

    async def test_concurrent_accepts_yield_one_success(self, container, session_factory):
        profile = await seed_profile(session_factory)
        offer = await _offer(container.offers, profile.id)

        results = await asyncio.gather(
            *[container.offers.accept_offer(offer.id, profile.id) for _ in range(5)],
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert sum(isinstance(r, OfferAlreadyAccepted) for r in results) == 4

    async def test_expired_offer_cannot_be_accepted(self, session_factory):
        offers = DiscountOfferStore(session_factory, ttl=timedelta(seconds=-1))
        profile = await seed_profile(session_factory)
        offer = await _offer(offers, profile.id)

        with pytest.raises(OfferExpired):
            await offers.accept_offer(offer.id, profile.id)
        assert await offers.get_active_offer(profile.id, "sub_1") is None

    async def test_other_profiles_offer_is_forbidden(self, container, session_factory):
        owner = await seed_profile(session_factory, "owner", "owner@example.com")
        other = await seed_profile(session_factory, "other", "other@example.com")
        offer = await _offer(container.offers, owner.id)

        with pytest.raises(Forbidden):
            await container.offers.accept_offer(offer.id, other.id)

    async def test_missing_offer(self, container):
        with pytest.raises(NotFound):
            await container.offers.accept_offer(404, 1)

    async def test_cleanup_and_stats(self, session_factory):
        offers = DiscountOfferStore(session_factory, ttl=timedelta(seconds=-1))
        live = DiscountOfferStore(session_factory)
        profile = await seed_profile(session_factory)
        await _offer(offers, profile.id, "sub_expired")
        kept = await _offer(live, profile.id, "sub_live", discount_percent=6.0)
        await live.accept_offer(kept.id, profile.id)
        await _offer(live, profile.id, "sub_active", discount_percent=10.0)

        stats = await live.stats()
        assert stats == {
            "total_offers": 3,
            "active_offers": 1,
            "expired_offers": 1,
            "accepted_offers": 1,
            "avg_discount_percent": round((8.33 + 6.0 + 10.0) / 3, 2),
        }

        assert await live.cleanup_expired() == 1
        assert (await live.stats())["total_offers"] == 2


class TestApplyCoupon:
    async def test_accepted_offer_creates_and_applies_coupon(self, container, gateway, session_factory):
        profile = await seed_profile(session_factory, payment_subscription_id="sub_1")
        offer = await _offer(container.offers, profile.id)
        await container.offers.accept_offer(offer.id, profile.id)

        data = await apply_accepted_offer(container.offers, gateway, profile, offer.id)

        assert data["coupon_id"] == "coupon_1"
        assert data["offer_price_cents"] == 11000
        assert ("apply_coupon", "sub_1", "coupon_1") in gateway.calls

    async def test_offer_must_be_accepted_first(self, container, gateway, session_factory):
        profile = await seed_profile(session_factory, payment_subscription_id="sub_1")
        offer = await _offer(container.offers, profile.id)

        with pytest.raises(ValidationError):
            await apply_accepted_offer(container.offers, gateway, profile, offer.id)
        assert gateway.count("create_coupon") == 0

    async def test_coupon_data(self, container, session_factory):
        profile = await seed_profile(session_factory)
        offer = await _offer(container.offers, profile.id, offer_price_cents=12000, user_input_cents=13000)

        data = apply_coupon_data(offer)

        assert data["percent_off"] == 20.0
        assert data["coupon_name"] == "Retention offer $120.00"
