"""Tests for the access gate: caching, single-flight reads, rate limiting and the circuit."""

import asyncio
from datetime import timedelta

import pytest

from paygate.errors import RateLimited
from paygate.services.access_gate import UNAVAILABLE, AccessGate, decide, restrict_to_products
from paygate.services.auth_service import Identity
from paygate.services.throttling import CircuitState, SlidingWindowRateLimiter, TTLCache, VolumeCircuitBreaker
from paygate.utils import now_utc
from tests.helpers import seed_profile, stripe_subscription


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _gate(container, clock, **overrides) -> AccessGate:
    return AccessGate(container.profile_store, container.engine, clock=clock, **overrides)


async def _active_profile(session_factory, identity="user-1", days=30, **fields):
    return await seed_profile(
        session_factory,
        identity,
        f"{identity}@example.com",
        subscription_status="ACTIVE",
        subscription_end=now_utc() + timedelta(days=days),
        subscription_auto_renew=True,
        payment_customer_id=f"cus_{identity}",
        last_webhook_update=now_utc(),
        **fields,
    )


def _count_reads(monkeypatch, store) -> list:
    reads = []
    original = store.get_by_identity

    async def counting(identity_id):
        reads.append(identity_id)
        await asyncio.sleep(0.01)
        return await original(identity_id)

    monkeypatch.setattr(store, "get_by_identity", counting)
    return reads


class TestDecisions:
    async def test_new_identity_is_denied_and_may_start_trial(self, container, clock):
        gate = _gate(container, clock)

        decision = await gate.check_access(Identity(subject="new-user"))

        assert decision.has_access is False
        assert decision.status == "FREE"
        assert decision.can_start_trial is True
        assert decision.reason == "no_subscription"

    async def test_active_subscription_is_granted(self, container, session_factory, clock):
        await _active_profile(session_factory)
        gate = _gate(container, clock)

        decision = await gate.check_access(Identity(subject="user-1"))

        assert decision.has_access is True
        assert decision.reason == "active_subscription"
        assert decision.source == "store"

    async def test_admin_always_has_access(self, container, session_factory, clock):
        await seed_profile(session_factory, "admin", is_admin=True)
        decision = await _gate(container, clock).check_access(Identity(subject="admin"))

        assert decision.has_access is True
        assert decision.is_admin is True
        assert decision.access_until is None

    async def test_lapsed_end_date_is_denied(self, session_factory):
        profile = await seed_profile(
            session_factory, subscription_status="ACTIVE", subscription_end=now_utc() - timedelta(minutes=1)
        )
        decision = decide(profile, now_utc())

        assert decision.has_access is False
        assert decision.reason == "subscription_lapsed"

    async def test_upstream_outage_falls_back_to_stored_state(self, container, gateway, clock):
        gateway.unavailable = True
        gate = _gate(container, clock)

        decision = await gate.check_access(Identity(subject="new-user", email="new@example.com"))

        assert decision.has_access is False
        assert decision.source == "store_fallback"

    async def test_stale_renewal_is_reconciled(self, container, gateway, session_factory, clock):
        await seed_profile(
            session_factory,
            subscription_status="ACTIVE",
            subscription_end=now_utc() - timedelta(hours=1),
            subscription_auto_renew=True,
            payment_customer_id="cus_1",
            last_webhook_update=now_utc() - timedelta(days=30),
        )
        gateway.subscriptions["cus_1"] = [stripe_subscription("sub_1", "cus_1")]

        decision = await _gate(container, clock).check_access(Identity(subject="user-1"))

        assert decision.has_access is True
        assert decision.source == "reconciled"
        assert gateway.count("list_subscriptions") == 1


class TestProductScope:
    async def test_matching_product_is_granted(self, container, session_factory, clock):
        await _active_profile(session_factory, payment_product_id="prod_pro")
        gate = _gate(container, clock)

        decision = await gate.check_access(Identity(subject="user-1"), product_ids=["prod_basic", "prod_pro"])

        assert decision.has_access is True
        assert decision.product_id == "prod_pro"

    async def test_other_product_is_denied(self, container, session_factory, clock):
        await _active_profile(session_factory, payment_product_id="prod_basic")
        gate = _gate(container, clock)

        scoped = await gate.check_access(Identity(subject="user-1"), product_ids=["prod_pro"])
        unscoped = await gate.check_access(Identity(subject="user-1"))

        assert scoped.has_access is False
        assert scoped.reason == "product_not_included"
        assert unscoped.has_access is True

    async def test_trial_matches_no_product(self, session_factory):
        end = now_utc() + timedelta(days=3)
        profile = await seed_profile(
            session_factory, subscription_status="ACTIVE", trial_used=True, trial_end=end, subscription_end=end
        )

        decision = restrict_to_products(decide(profile, now_utc()), {"prod_pro"})

        assert decision.has_access is False
        assert decision.reason == "product_not_included"

    async def test_admin_passes_any_product_filter(self, session_factory):
        profile = await seed_profile(session_factory, "admin", is_admin=True)

        decision = restrict_to_products(decide(profile, now_utc()), {"prod_pro"})

        assert decision.has_access is True

    async def test_admin_grant_is_reported(self, session_factory):
        until = now_utc() + timedelta(days=7)
        profile = await seed_profile(
            session_factory, subscription_status="ACTIVE", subscription_end=until, access_granted_until=until
        )

        decision = decide(profile, now_utc())

        assert decision.has_access is True
        assert decision.reason == "admin_grant"


class TestCaching:
    async def test_concurrent_checks_share_one_read(self, container, session_factory, clock, monkeypatch):
        await _active_profile(session_factory)
        reads = _count_reads(monkeypatch, container.profile_store)
        gate = _gate(container, clock)

        decisions = await asyncio.gather(
            *[gate.check_access(Identity(subject="user-1")) for _ in range(100)]
        )

        assert len(reads) == 1
        assert all(d.has_access for d in decisions)

    async def test_second_check_is_served_from_cache(self, container, session_factory, clock, monkeypatch):
        await _active_profile(session_factory)
        reads = _count_reads(monkeypatch, container.profile_store)
        gate = _gate(container, clock)

        await gate.check_access(Identity(subject="user-1"))
        decision = await gate.check_access(Identity(subject="user-1"))

        assert decision.source == "cache"
        assert len(reads) == 1

    async def test_negative_result_expires_quickly(self, container, clock):
        gate = _gate(container, clock, negative_cache_ttl=30)
        await gate.check_access(Identity(subject="new-user"))

        assert gate.cache.get("new-user") is not None
        clock.advance(31)
        assert gate.cache.get("new-user") is None

    async def test_positive_ttl_is_capped_at_access_end(self, container, session_factory, clock):
        await seed_profile(
            session_factory,
            subscription_status="ACTIVE",
            subscription_end=now_utc() + timedelta(seconds=60),
            payment_customer_id="cus_1",
            last_webhook_update=now_utc(),
        )
        gate = _gate(container, clock, cache_ttl=600)
        await gate.check_access(Identity(subject="user-1"))

        clock.advance(61)
        assert gate.cache.get("user-1") is None

    async def test_reconciliation_invalidates_cached_decision(self, container, gateway, session_factory, clock):
        profile = await seed_profile(session_factory, payment_customer_id="cus_1", last_webhook_update=now_utc())
        gate = _gate(container, clock)
        assert (await gate.check_access(Identity(subject="user-1"))).has_access is False

        gateway.subscriptions["cus_1"] = [stripe_subscription("sub_1", "cus_1")]
        await container.engine.reconcile(profile_id=profile.id)
        decision = await gate.check_access(Identity(subject="user-1"))

        assert decision.has_access is True
        assert decision.source == "store"

    async def test_force_refresh_reconciles(self, container, gateway, session_factory, clock):
        await seed_profile(session_factory, payment_customer_id="cus_1", last_webhook_update=now_utc())
        gateway.subscriptions["cus_1"] = [stripe_subscription("sub_1", "cus_1")]
        gate = _gate(container, clock)

        decision = await gate.check_access(Identity(subject="user-1"), force_refresh=True)

        assert decision.has_access is True
        assert decision.source == "reconciled"


class TestRateLimiting:
    async def test_over_limit_serves_last_decision(self, container, session_factory, clock):
        await _active_profile(session_factory)
        gate = _gate(container, clock, rate_limit=2)

        await gate.check_access(Identity(subject="user-1"))
        await gate.check_access(Identity(subject="user-1"))
        decision = await gate.check_access(Identity(subject="user-1"))

        assert decision.has_access is True
        assert decision.source == "rate_limited"

    async def test_over_limit_without_history_raises(self, container, session_factory, clock):
        await _active_profile(session_factory)
        gate = _gate(container, clock, rate_limit=1)
        await gate.check_access(Identity(subject="user-1"))
        gate.cache.clear()

        with pytest.raises(RateLimited) as exc:
            await gate.check_access(Identity(subject="user-1"))
        assert exc.value.retry_after == 60

    async def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=2, window=10, clock=clock)

        assert limiter.allow("k") and limiter.allow("k")
        assert not limiter.allow("k")
        clock.advance(10.5)
        assert limiter.allow("k")


class TestCircuit:
    async def test_open_circuit_serves_cache_or_denies(self, container, session_factory, clock):
        await _active_profile(session_factory)
        gate = _gate(container, clock, circuit_threshold=3, circuit_cooldown=30)

        for _ in range(3):
            await gate.check_access(Identity(subject="user-1"))
        cached = await gate.check_access(Identity(subject="user-1"))
        unknown = await gate.check_access(Identity(subject="someone-else"))

        assert gate.circuit.state is CircuitState.OPEN
        assert cached.has_access is True
        assert cached.source == "circuit_open"
        assert unknown.has_access is False
        assert unknown.status == UNAVAILABLE
        assert unknown.retry_after == 30

    async def test_circuit_closes_after_cooldown(self):
        clock = FakeClock()
        breaker = VolumeCircuitBreaker(threshold=1, window=10, cooldown=5, clock=clock)

        assert breaker.allow()
        assert not breaker.allow()
        clock.advance(5)
        assert breaker.allow()
        assert breaker.state is CircuitState.CLOSED


class TestTTLCache:
    def test_lru_eviction(self):
        cache = TTLCache(max_entries=2, clock=FakeClock())
        cache.set("a", 1, 60)
        cache.set("b", 2, 60)
        cache.get("a")
        cache.set("c", 3, 60)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_stale_value_survives_expiry(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        cache.set("a", 1, 5)
        clock.advance(6)

        assert cache.get("a") is None
        assert cache.get_stale("a") == 1
