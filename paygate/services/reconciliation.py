"""Reconciliation engine — recomputes and stores canonical subscription state.

The engine is the only writer of subscription fields. Runs are coalesced per
profile: while one run is in flight, further triggers share a single trailing
run that fetches fresh Stripe data once the first completes. A run that has
started is shielded from caller cancellation so its write is never torn.
"""

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from paygate.constants import CHECKOUT_ACCESS_DAYS, TRIAL_DAYS
from paygate.errors import ProfileNotFound, TrialAlreadyUsed, ValidationError
from paygate.models import Profile, SubscriptionStatus
from paygate.services.concurrency import Coalescer
from paygate.services.notifications import NotificationSink
from paygate.services.payment_gateway import PaymentGateway
from paygate.services.profile_store import ProfileStore
from paygate.services.snapshot import SubscriptionSnapshot, build_snapshot, select_canonical
from paygate.utils import mask_email, mask_id, now_utc

logger = logging.getLogger(__name__)


class Trigger(str, enum.Enum):
    WEBHOOK = "webhook"
    FORCE_SYNC = "force_sync"
    CHECKOUT = "checkout"
    ACCESS_CHECK = "access_check"
    ADMIN = "admin"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class ReconciliationResult:
    profile_id: int
    status: SubscriptionStatus
    access_until: datetime | None
    changed: bool
    profile: Profile | None = None
    snapshot: SubscriptionSnapshot | None = None


_STATUS_MESSAGES = {
    SubscriptionStatus.ACTIVE: ("Subscription active", "Your subscription is active. Welcome aboard!"),
    SubscriptionStatus.CANCELLED: ("Subscription cancelled", "Your subscription has been cancelled."),
    SubscriptionStatus.EXPIRED: ("Subscription expired", "Your subscription has expired. Renew to regain access."),
}


class ReconciliationEngine:
    def __init__(
        self,
        store: ProfileStore,
        gateway: PaymentGateway,
        notifier: NotificationSink | None = None,
    ):
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._runs = Coalescer()
        self._listeners: list[Callable[[Profile], None]] = []

    def add_listener(self, listener: Callable[[Profile], None]) -> None:
        """Register a callback invoked with the profile after each state change."""
        self._listeners.append(listener)

    def is_running(self, profile_id: int) -> bool:
        return self._runs.in_flight(profile_id)

    # --- Resolution ---

    async def resolve_profile(
        self,
        *,
        profile_id: int | None = None,
        identity_id: str | None = None,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        email: str | None = None,
    ) -> Profile | None:
        """Find a profile by the strongest identifier available; email is the last resort."""
        if profile_id is not None:
            profile = await self._store.get(profile_id)
            if profile is not None:
                return profile
        if identity_id:
            profile = await self._store.get_by_identity(identity_id)
            if profile is not None:
                return profile
        if customer_id:
            profile = await self._store.get_by_customer(customer_id)
            if profile is not None:
                return profile
        if subscription_id:
            profile = await self._store.get_by_subscription(subscription_id)
            if profile is not None:
                return profile
        if email:
            matches = await self._store.find_by_email(email)
            if len(matches) > 1:
                logger.warning(
                    "Email %s matches %d profiles, using most recently updated (%s)",
                    mask_email(email), len(matches), matches[0].id,
                )
            if matches:
                return matches[0]
        return None

    # --- Reconciliation ---

    async def reconcile(
        self,
        *,
        profile_id: int | None = None,
        identity_id: str | None = None,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        email: str | None = None,
        trigger: Trigger = Trigger.FORCE_SYNC,
    ) -> ReconciliationResult:
        profile = await self.resolve_profile(
            profile_id=profile_id,
            identity_id=identity_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            email=email,
        )
        if profile is None:
            raise ProfileNotFound()
        if profile.is_admin:
            return self._admin_result(profile)

        return await self._runs.run(
            profile.id, lambda: self._run(profile.id, trigger, customer_hint=customer_id)
        )

    @staticmethod
    def _admin_result(profile: Profile) -> ReconciliationResult:
        return ReconciliationResult(
            profile_id=profile.id,
            status=SubscriptionStatus.ACTIVE,
            access_until=None,
            changed=False,
            profile=profile,
        )

    async def _run(self, profile_id: int, trigger: Trigger, customer_hint: str | None) -> ReconciliationResult:
        profile = await self._store.get(profile_id)
        if profile is None:
            raise ProfileNotFound()
        if profile.is_admin:
            return self._admin_result(profile)

        previous = profile.status
        customer_id = profile.payment_customer_id or customer_hint
        if not customer_id and profile.email:
            customer = await self._gateway.find_customer_by_email(profile.email)
            customer_id = customer["id"] if customer else None

        subscriptions: list[dict] = []
        if customer_id:
            subscriptions = await self._gateway.list_subscriptions(customer_id)

        checkouts: list[dict] = []
        fetched_at = now_utc()
        canonical = select_canonical(subscriptions, fetched_at, profile.access_revoked_at)
        if canonical is None and (customer_id or profile.email):
            checkouts = await self._gateway.list_completed_checkouts(
                customer_id=customer_id,
                email=profile.email,
                since=fetched_at - timedelta(days=CHECKOUT_ACCESS_DAYS),
            )
        observed_at = now_utc()

        snapshot = build_snapshot(
            customer_id=customer_id,
            subscriptions=subscriptions,
            checkouts=checkouts,
            profile=profile,
            now=observed_at,
        )
        snapshot.ensure_writable(observed_at)

        updated, changed = await self._store.apply_snapshot(profile_id, snapshot, observed_at, basis=profile)
        logger.info(
            "Reconciled profile %s (%s, customer %s): %s%s",
            profile_id, trigger.value, mask_id(customer_id), updated.subscription_status,
            " [changed]" if changed else "",
        )
        if changed:
            self._emit(updated)
            if updated.status is not previous:
                await self._notify_status(updated)

        return ReconciliationResult(
            profile_id=profile_id,
            status=updated.status,
            access_until=updated.subscription_end,
            changed=changed,
            profile=updated,
            snapshot=snapshot,
        )

    # --- Direct writes ---

    async def start_trial(self, profile_id: int) -> datetime:
        """Claim the one-time trial atomically and return its end."""
        started_at = now_utc()
        trial_end = started_at + timedelta(days=TRIAL_DAYS)
        claimed = await self._store.claim_trial(profile_id, started_at, trial_end)
        if not claimed:
            profile = await self._store.get(profile_id)
            if profile is None:
                raise ProfileNotFound()
            if profile.trial_used:
                raise TrialAlreadyUsed()
            raise ValidationError("Trial is only available to accounts without a subscription")

        profile = await self._store.get(profile_id)
        logger.info("Trial started for profile %s until %s", profile_id, trial_end.isoformat())
        self._emit(profile)
        if self._notifier:
            await self._notifier.notify(
                profile_id,
                "Trial started",
                f"Your {TRIAL_DAYS}-day trial is active until {trial_end:%Y-%m-%d}.",
                email=profile.email,
            )
        return trial_end

    async def record_auto_renew(self, profile_id: int, auto_renew: bool) -> Profile:
        """Store the auto-renew flag after Stripe accepted the change."""
        cancelled_at = None if auto_renew else now_utc()
        profile = await self._store.set_auto_renew(profile_id, auto_renew, cancelled_at)
        self._emit(profile)
        return profile

    async def grant_access(self, profile_id: int, until: datetime) -> Profile:
        """Complimentary access until ``until``, kept across reconciliations."""
        now = now_utc()
        if until <= now:
            raise ValidationError("Grant must end in the future")
        profile = await self._store.grant_access(profile_id, until, now)
        logger.info("Access granted to profile %s until %s", profile_id, until.isoformat())
        self._emit(profile)
        if self._notifier:
            await self._notifier.notify(
                profile_id,
                "Access granted",
                f"You have been granted access until {until:%Y-%m-%d}.",
                email=profile.email,
            )
        return profile

    async def revoke_access(self, profile_id: int) -> Profile:
        """End access now. Stripe subscriptions must already be cancelled by the caller."""
        profile = await self._store.revoke_access(profile_id, now_utc())
        logger.info("Access revoked for profile %s", profile_id)
        self._emit(profile)
        await self._notify_status(profile)
        return profile

    async def expire_lapsed(self) -> int:
        count = await self._store.expire_lapsed(now_utc())
        if count:
            logger.info("Expired %d lapsed profiles", count)
        return count

    # --- Side effects ---

    def _emit(self, profile: Profile) -> None:
        for listener in self._listeners:
            listener(profile)

    async def _notify_status(self, profile: Profile) -> None:
        if self._notifier is None or profile.status not in _STATUS_MESSAGES:
            return
        title, message = _STATUS_MESSAGES[profile.status]
        await self._notifier.notify(profile.id, title, message, email=profile.email)
