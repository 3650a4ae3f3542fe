"""Admin operations on other profiles."""

import logging
from datetime import timedelta

from paygate.constants import ADMIN_GRANT_MAX_DAYS
from paygate.errors import Forbidden, ProfileNotFound, ValidationError
from paygate.models import Profile
from paygate.services.access_gate import AccessGate
from paygate.services.payment_gateway import PaymentGateway
from paygate.services.profile_store import ProfileStore
from paygate.services.reconciliation import ReconciliationEngine, ReconciliationResult, Trigger
from paygate.utils import mask_id, now_utc

logger = logging.getLogger(__name__)

_LIVE_STATUSES = {"active", "trialing", "past_due", "unpaid", "incomplete", "paused"}


class AdminService:
    def __init__(
        self,
        store: ProfileStore,
        engine: ReconciliationEngine,
        gateway: PaymentGateway,
        gate: AccessGate | None = None,
    ):
        self._store = store
        self._engine = engine
        self._gateway = gateway
        self._gate = gate

    async def _target(self, profile_id: int) -> Profile:
        profile = await self._store.get(profile_id)
        if profile is None:
            raise ProfileNotFound()
        return profile

    async def toggle_admin(self, admin: Profile, profile_id: int) -> Profile:
        if admin.id == profile_id:
            raise ValidationError("Cannot change your own admin status")
        target = await self._target(profile_id)
        updated = await self._store.set_admin(profile_id, not target.is_admin)
        if self._gate:
            self._gate.invalidate_profile(updated)
        logger.info("Admin %s set is_admin=%s on profile %s", admin.id, updated.is_admin, profile_id)
        return updated

    async def reconcile(self, profile_id: int) -> ReconciliationResult:
        return await self._engine.reconcile(profile_id=profile_id, trigger=Trigger.ADMIN)

    async def delete_profile(self, admin: Profile, profile_id: int) -> None:
        """Cancel every live Stripe subscription, then delete the profile.

        If Stripe is unavailable the profile is kept and the error propagates.
        """
        if admin.id == profile_id:
            raise ValidationError("Cannot delete your own profile")
        target = await self._target(profile_id)
        if target.is_admin:
            raise Forbidden("Cannot delete another admin")

        cancelled = await self._cancel_live_subscriptions(target)
        await self._store.delete(profile_id)
        if self._gate:
            self._gate.invalidate_profile(target)
        logger.info(
            "Admin %s deleted profile %s (customer %s, %d subscriptions cancelled)",
            admin.id, profile_id, mask_id(target.payment_customer_id), cancelled,
        )

    async def _cancel_live_subscriptions(self, target: Profile) -> int:
        """Cancel every live Stripe subscription of a profile immediately."""
        cancelled = 0
        if target.payment_customer_id:
            for sub in await self._gateway.list_subscriptions(target.payment_customer_id):
                if sub.get("status") in _LIVE_STATUSES:
                    await self._gateway.cancel_subscription(sub["id"])
                    cancelled += 1
        elif target.payment_subscription_id:
            if await self._gateway.cancel_subscription(target.payment_subscription_id) is not None:
                cancelled += 1
        return cancelled

    async def cancel_subscription(self, admin: Profile, profile_id: int) -> tuple[int, ReconciliationResult]:
        """Cancel a user's Stripe subscriptions now, then reconcile.

        Paid-through time is honoured as a grace period by reconciliation.
        """
        target = await self._target(profile_id)
        cancelled = await self._cancel_live_subscriptions(target)
        if not cancelled:
            raise ValidationError("Profile has no active subscription")
        logger.info(
            "Admin %s cancelled %d subscriptions for profile %s (customer %s)",
            admin.id, cancelled, profile_id, mask_id(target.payment_customer_id),
        )
        result = await self._engine.reconcile(profile_id=profile_id, trigger=Trigger.ADMIN)
        return cancelled, result

    async def grant_access(self, admin: Profile, profile_id: int, days: int, reason: str | None = None) -> Profile:
        target = await self._target(profile_id)
        if target.is_admin:
            raise ValidationError("Admins already have access")
        if not 1 <= days <= ADMIN_GRANT_MAX_DAYS:
            raise ValidationError(f"Grant must be between 1 and {ADMIN_GRANT_MAX_DAYS} days")
        profile = await self._engine.grant_access(profile_id, now_utc() + timedelta(days=days))
        logger.info("Admin %s granted %d days to profile %s: %s", admin.id, days, profile_id, reason or "-")
        return profile

    async def revoke_access(self, admin: Profile, profile_id: int, reason: str | None = None) -> Profile:
        """Cancel live Stripe subscriptions, then end every kind of access now.

        If Stripe is unavailable nothing local changes and the error propagates.
        """
        if admin.id == profile_id:
            raise ValidationError("Cannot revoke your own access")
        target = await self._target(profile_id)
        if target.is_admin:
            raise Forbidden("Remove admin status before revoking access")
        cancelled = await self._cancel_live_subscriptions(target)
        profile = await self._engine.revoke_access(profile_id)
        logger.info(
            "Admin %s revoked access for profile %s (%d subscriptions cancelled): %s",
            admin.id, profile_id, cancelled, reason or "-",
        )
        return profile
