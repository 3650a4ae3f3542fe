"""Tests for trial start, cancel-with-grace and auto-renew."""

import asyncio
from datetime import timedelta

import pytest

from paygate.errors import TrialAlreadyUsed, UpstreamUnavailable, ValidationError
from paygate.models import SubscriptionStatus
from paygate.services.access_gate import has_access
from paygate.utils import now_utc
from tests.helpers import seed_profile, stripe_subscription


async def _subscribed(container, gateway, session_factory):
    profile = await seed_profile(session_factory, payment_customer_id="cus_1")
    gateway.subscriptions["cus_1"] = [stripe_subscription("sub_1", "cus_1")]
    result = await container.engine.reconcile(profile_id=profile.id)
    return result.profile


class TestStartTrial:
    async def test_trial_grants_fourteen_days(self, container, session_factory):
        profile = await seed_profile(session_factory)

        trial_end = await container.trials.start_trial(profile)

        stored = await container.profile_store.get(profile.id)
        assert stored.status is SubscriptionStatus.ACTIVE
        assert stored.trial_used is True
        assert stored.trial_end == trial_end
        assert stored.subscription_end == trial_end
        assert timedelta(days=13, hours=23) < trial_end - now_utc() <= timedelta(days=14)

    async def test_trial_is_one_time(self, container, session_factory):
        profile = await seed_profile(session_factory)
        await container.trials.start_trial(profile)

        stored = await container.profile_store.get(profile.id)
        with pytest.raises(TrialAlreadyUsed):
            await container.trials.start_trial(stored)

    async def test_concurrent_starts_yield_one_trial(self, container, session_factory):
        profile = await seed_profile(session_factory)

        results = await asyncio.gather(
            *[container.trials.start_trial(profile) for _ in range(5)], return_exceptions=True
        )

        started = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, TrialAlreadyUsed)]
        assert len(started) == 1
        assert len(conflicts) == 4

    async def test_subscribed_profile_cannot_start_trial(self, container, gateway, session_factory):
        profile = await _subscribed(container, gateway, session_factory)

        with pytest.raises(ValidationError):
            await container.trials.start_trial(profile)

    async def test_admin_cannot_start_trial(self, container, session_factory):
        profile = await seed_profile(session_factory, is_admin=True)

        with pytest.raises(ValidationError):
            await container.trials.start_trial(profile)

    async def test_trial_survives_reconciliation(self, container, session_factory):
        profile = await seed_profile(session_factory, email=None)
        trial_end = await container.trials.start_trial(profile)

        result = await container.engine.reconcile(profile_id=profile.id)

        assert result.status is SubscriptionStatus.ACTIVE
        assert result.access_until == trial_end


class TestCancelWithGrace:
    async def test_access_continues_until_period_end(self, container, gateway, session_factory):
        profile = await _subscribed(container, gateway, session_factory)
        period_end = profile.subscription_end

        access_until = await container.trials.cancel_with_grace(profile)

        stored = await container.profile_store.get(profile.id)
        assert access_until == period_end
        assert stored.status is SubscriptionStatus.ACTIVE
        assert stored.subscription_auto_renew is False
        assert stored.subscription_cancelled_at is not None
        assert has_access(stored, now_utc())
        assert ("set_cancel_at_period_end", "sub_1", True) in gateway.calls

    async def test_reconcile_after_cancel_keeps_end_date(self, container, gateway, session_factory):
        profile = await _subscribed(container, gateway, session_factory)
        await container.trials.cancel_with_grace(profile)

        result = await container.engine.reconcile(profile_id=profile.id)

        assert result.profile.subscription_auto_renew is False
        assert result.access_until == profile.subscription_end

    async def test_requires_live_subscription(self, container, session_factory):
        profile = await seed_profile(session_factory)
        with pytest.raises(ValidationError):
            await container.trials.cancel_with_grace(profile)

    async def test_provider_failure_leaves_profile_untouched(self, container, gateway, session_factory):
        profile = await _subscribed(container, gateway, session_factory)
        gateway.unavailable = True

        with pytest.raises(UpstreamUnavailable):
            await container.trials.cancel_with_grace(profile)

        stored = await container.profile_store.get(profile.id)
        assert stored.subscription_auto_renew is True

    async def test_auto_renew_can_be_restored(self, container, gateway, session_factory):
        profile = await _subscribed(container, gateway, session_factory)
        await container.trials.cancel_with_grace(profile)

        updated = await container.trials.set_auto_renew(
            await container.profile_store.get(profile.id), True
        )

        assert updated.subscription_auto_renew is True
        assert updated.subscription_cancelled_at is None
        assert ("set_cancel_at_period_end", "sub_1", False) in gateway.calls
