"""Trial start, cancel-with-grace and auto-renew toggling."""

import logging
from datetime import datetime

from paygate.errors import TrialAlreadyUsed, ValidationError
from paygate.models import Profile, SubscriptionStatus
from paygate.services.access_gate import can_start_trial, has_access
from paygate.services.notifications import NotificationSink
from paygate.services.payment_gateway import PaymentGateway
from paygate.services.reconciliation import ReconciliationEngine
from paygate.utils import mask_id, now_utc

logger = logging.getLogger(__name__)


class TrialManager:
    def __init__(
        self,
        engine: ReconciliationEngine,
        gateway: PaymentGateway,
        notifier: NotificationSink | None = None,
    ):
        self._engine = engine
        self._gateway = gateway
        self._notifier = notifier

    async def start_trial(self, profile: Profile) -> datetime:
        """Start the one-time trial. Raises TrialAlreadyUsed or ValidationError."""
        if profile.trial_used:
            raise TrialAlreadyUsed()
        if not can_start_trial(profile):
            raise ValidationError("Trial is only available to accounts without a subscription")
        return await self._engine.start_trial(profile.id)

    def _require_live_subscription(self, profile: Profile) -> str:
        now = now_utc()
        if (
            not profile.payment_subscription_id
            or profile.status is not SubscriptionStatus.ACTIVE
            or not has_access(profile, now)
        ):
            raise ValidationError("No active subscription")
        return profile.payment_subscription_id

    async def cancel_with_grace(self, profile: Profile) -> datetime | None:
        """Cancel at period end; access continues until the paid-through date."""
        subscription_id = self._require_live_subscription(profile)
        await self._gateway.set_cancel_at_period_end(subscription_id, True)
        updated = await self._engine.record_auto_renew(profile.id, False)
        logger.info("Profile %s cancelled %s at period end", profile.id, mask_id(subscription_id))

        if self._notifier:
            until = f" until {updated.subscription_end:%Y-%m-%d}" if updated.subscription_end else ""
            await self._notifier.notify(
                profile.id,
                "Subscription cancelled",
                f"Your subscription will not renew. You keep access{until}.",
                email=profile.email,
            )
        return updated.subscription_end

    async def set_auto_renew(self, profile: Profile, auto_renew: bool) -> Profile:
        """Flip cancel-at-period-end on the existing subscription."""
        subscription_id = self._require_live_subscription(profile)
        if not auto_renew:
            await self.cancel_with_grace(profile)
            return await self._engine.resolve_profile(profile_id=profile.id)

        await self._gateway.set_cancel_at_period_end(subscription_id, False)
        updated = await self._engine.record_auto_renew(profile.id, True)
        logger.info("Profile %s re-enabled auto-renew on %s", profile.id, mask_id(subscription_id))
        if self._notifier:
            await self._notifier.notify(
                profile.id,
                "Auto-renew enabled",
                "Your subscription will renew automatically at the end of the current period.",
                email=profile.email,
            )
        return updated
