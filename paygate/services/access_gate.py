"""Access gate — request-time answer to "does this identity have paid access?".

Cache first, then a single-flight read of the profile store. The
reconciliation engine is only consulted when stored data is stale or missing,
or when the caller forces a refresh. Anything ambiguous is a denial.
"""

import asyncio
import logging
import time
from collections.abc import Collection
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from paygate.config import Settings
from paygate.errors import RateLimited, UpstreamUnavailable
from paygate.models import Profile, SubscriptionStatus
from paygate.services.auth_service import Identity
from paygate.services.concurrency import SingleFlight
from paygate.services.profile_store import ProfileStore
from paygate.services.reconciliation import ReconciliationEngine, Trigger
from paygate.services.throttling import (
    Clock,
    SlidingWindowRateLimiter,
    TTLCache,
    VolumeCircuitBreaker,
)
from paygate.utils import mask_id, now_utc

logger = logging.getLogger(__name__)

UNAVAILABLE = "UNAVAILABLE"


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    status: str
    can_start_trial: bool
    reason: str
    access_until: datetime | None = None
    source: str = "store"
    is_admin: bool = False
    retry_after: int | None = None
    product_id: str | None = None


def has_access(profile: Profile, now: datetime) -> bool:
    if profile.is_admin:
        return True
    return profile.status is SubscriptionStatus.ACTIVE and (
        profile.subscription_end is None or now < profile.subscription_end
    )


def can_start_trial(profile: Profile) -> bool:
    return not profile.is_admin and not profile.trial_used and profile.status is SubscriptionStatus.FREE


def decide(profile: Profile, now: datetime, source: str = "store") -> AccessDecision:
    """Pure access decision from a stored profile."""
    granted = has_access(profile, now)
    status = profile.status
    if profile.is_admin:
        reason = "admin"
    elif granted:
        on_trial = profile.trial_end is not None and profile.subscription_end == profile.trial_end
        granted_by_admin = (
            profile.access_granted_until is not None
            and profile.subscription_end == profile.access_granted_until
        )
        if granted_by_admin:
            reason = "admin_grant"
        else:
            reason = "trial" if on_trial else "active_subscription"
    elif status is SubscriptionStatus.ACTIVE:
        reason = "subscription_lapsed"
    elif status is SubscriptionStatus.CANCELLED:
        reason = "subscription_cancelled"
    elif status is SubscriptionStatus.EXPIRED:
        reason = "subscription_expired"
    else:
        reason = "no_subscription"
    return AccessDecision(
        has_access=granted,
        status=status.value,
        can_start_trial=can_start_trial(profile),
        reason=reason,
        access_until=None if profile.is_admin else profile.subscription_end,
        source=source,
        is_admin=profile.is_admin,
        product_id=profile.payment_product_id,
    )


def restrict_to_products(decision: AccessDecision, product_ids: Collection[str] | None) -> AccessDecision:
    """Narrow a decision to subscriptions of the given Stripe products.

    Admins pass regardless. Access without a product (trials, admin grants,
    one-time checkouts) does not match any product.
    """
    if not product_ids or not decision.has_access or decision.is_admin:
        return decision
    if decision.product_id in product_ids:
        return decision
    return replace(decision, has_access=False, reason="product_not_included")


def _denied(reason: str, source: str) -> AccessDecision:
    return AccessDecision(
        has_access=False, status=UNAVAILABLE, can_start_trial=False, reason=reason, source=source
    )


class AccessGate:
    def __init__(
        self,
        store: ProfileStore,
        engine: ReconciliationEngine,
        *,
        cache_ttl: float = 600,
        negative_cache_ttl: float = 30,
        max_entries: int = 10_000,
        rate_limit: int = 60,
        rate_window: float = 60,
        circuit_threshold: int = 1000,
        circuit_window: float = 10,
        circuit_cooldown: float = 30,
        clock: Clock = time.monotonic,
    ):
        self._store = store
        self._engine = engine
        self.cache_ttl = cache_ttl
        self.negative_cache_ttl = negative_cache_ttl
        self.cache = TTLCache(max_entries=max_entries, clock=clock)
        self.limiter = SlidingWindowRateLimiter(rate_limit, rate_window, max_keys=max_entries, clock=clock)
        self.circuit = VolumeCircuitBreaker(circuit_threshold, circuit_window, circuit_cooldown, clock=clock)
        self._reads = SingleFlight()
        engine.add_listener(self.invalidate_profile)

    @classmethod
    def from_settings(cls, settings: Settings, store: ProfileStore, engine: ReconciliationEngine) -> "AccessGate":
        return cls(
            store,
            engine,
            cache_ttl=settings.access_cache_ttl_seconds,
            negative_cache_ttl=settings.access_negative_cache_ttl_seconds,
            max_entries=settings.access_cache_max_entries,
            rate_limit=settings.access_rate_limit,
            rate_window=settings.access_rate_window_seconds,
            circuit_threshold=settings.access_circuit_threshold,
            circuit_window=settings.access_circuit_window_seconds,
            circuit_cooldown=settings.access_circuit_cooldown_seconds,
        )

    async def check_access(
        self,
        identity: Identity,
        force_refresh: bool = False,
        product_ids: Collection[str] | None = None,
    ) -> AccessDecision:
        """Decide access for an identity, optionally limited to some Stripe products."""
        decision = await self._check(identity, force_refresh)
        return restrict_to_products(decision, product_ids)

    async def _check(self, identity: Identity, force_refresh: bool) -> AccessDecision:
        key = identity.subject

        if not self.circuit.allow():
            cached = self.cache.get_stale(key)
            if cached is not None:
                return replace(cached, source="circuit_open")
            return replace(
                _denied("service_busy", "circuit_open"), retry_after=self.circuit.retry_after()
            )

        if not self.limiter.allow(key):
            last = self.cache.get_stale(key)
            if last is not None:
                return replace(last, source="rate_limited")
            inflight = self._reads.pending(key)
            if inflight is not None:
                return await asyncio.shield(inflight)
            raise RateLimited(retry_after=int(self.limiter.window))

        if force_refresh:
            return await self._refresh(identity)

        cached = self.cache.get(key)
        if cached is not None:
            return replace(cached, source="cache")
        return await self._reads.do(key, lambda: self._load(identity))

    def invalidate(self, identity_id: str) -> None:
        self.cache.pop(identity_id)

    def invalidate_profile(self, profile: Profile) -> None:
        self.invalidate(profile.external_identity_id)

    def clear(self) -> None:
        self.cache.clear()
        self.limiter.reset()
        self.circuit.reset()

    # --- Internals ---

    async def _load(self, identity: Identity) -> AccessDecision:
        try:
            profile = await self._store.get_by_identity(identity.subject)
            if profile is None:
                profile = await self._store.get_or_create(identity.subject, identity.email, identity.name)
                return await self._reconcile(identity, profile, Trigger.ACCESS_CHECK)
            if self._is_stale(profile, now_utc()):
                return await self._reconcile(identity, profile, Trigger.ACCESS_CHECK)
        except SQLAlchemyError:
            logger.exception("Profile store read failed for %s", mask_id(identity.subject))
            return _denied("store_error", "error")
        return self._remember(identity.subject, decide(profile, now_utc()))

    async def _refresh(self, identity: Identity) -> AccessDecision:
        try:
            profile = await self._store.get_or_create(identity.subject, identity.email, identity.name)
        except SQLAlchemyError:
            logger.exception("Profile store read failed for %s", mask_id(identity.subject))
            return _denied("store_error", "error")
        return await self._reconcile(identity, profile, Trigger.FORCE_SYNC)

    async def _reconcile(self, identity: Identity, profile: Profile, trigger: Trigger) -> AccessDecision:
        try:
            result = await self._engine.reconcile(profile_id=profile.id, trigger=trigger)
        except UpstreamUnavailable:
            logger.warning("Reconciliation unavailable for %s, using stored state", mask_id(identity.subject))
            return self._remember(identity.subject, decide(profile, now_utc(), source="store_fallback"))
        fresh = result.profile or profile
        return self._remember(identity.subject, decide(fresh, now_utc(), source="reconciled"))

    @staticmethod
    def _is_stale(profile: Profile, now: datetime) -> bool:
        if profile.is_admin:
            return False
        if profile.payment_customer_id and profile.last_webhook_update is None:
            return True
        if profile.status is SubscriptionStatus.ACTIVE and profile.access_granted_until is not None:
            ended = profile.subscription_end is not None and profile.subscription_end <= now
            if ended and profile.access_granted_until > now:
                return True
        return (
            profile.status is SubscriptionStatus.ACTIVE
            and profile.subscription_auto_renew
            and profile.subscription_end is not None
            and profile.subscription_end <= now
        )

    def _remember(self, key: str, decision: AccessDecision) -> AccessDecision:
        if decision.has_access:
            ttl = self.cache_ttl
            if decision.access_until is not None:
                ttl = min(ttl, (decision.access_until - now_utc()).total_seconds())
            if ttl > 0:
                self.cache.set(key, decision, ttl)
        else:
            self.cache.set(key, decision, self.negative_cache_ttl)
        return decision
