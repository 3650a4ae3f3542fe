"""Profile store — all SQL against the ``profiles`` table.

Subscription fields are only written through ``apply_snapshot``,
``claim_trial``, ``set_auto_renew``, ``grant_access``, ``revoke_access`` and
``expire_lapsed``, which the reconciliation engine calls. Everything else here
is a read or an identity field write.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.errors import ProfileNotFound
from paygate.models import DiscountOffer, Notification, Profile, SubscriptionStatus
from paygate.services.snapshot import SubscriptionSnapshot
from paygate.utils import mask_id, now_utc

logger = logging.getLogger(__name__)


def _overrides(profile: Profile) -> tuple[datetime | None, datetime | None]:
    return profile.access_granted_until, profile.access_revoked_at


class ProfileStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    # --- Reads ---

    async def get(self, profile_id: int) -> Profile | None:
        async with self._sessions() as db:
            return await db.get(Profile, profile_id)

    async def _one(self, *criteria) -> Profile | None:
        async with self._sessions() as db:
            result = await db.execute(select(Profile).where(*criteria).limit(1))
            return result.scalar_one_or_none()

    async def get_by_identity(self, identity_id: str) -> Profile | None:
        return await self._one(Profile.external_identity_id == identity_id)

    async def get_by_customer(self, customer_id: str) -> Profile | None:
        return await self._one(Profile.payment_customer_id == customer_id)

    async def get_by_subscription(self, subscription_id: str) -> Profile | None:
        return await self._one(Profile.payment_subscription_id == subscription_id)

    async def find_by_email(self, email: str) -> list[Profile]:
        """All profiles for an email, most recently updated first."""
        async with self._sessions() as db:
            result = await db.execute(
                select(Profile)
                .where(Profile.email == email.strip().lower())
                .order_by(Profile.updated_at.desc(), Profile.id.desc())
            )
            return list(result.scalars().all())

    async def list_stale_auto_renew(self, now: datetime, limit: int) -> list[Profile]:
        """ACTIVE profiles past their end date that were expected to renew or hold a running grant."""
        async with self._sessions() as db:
            result = await db.execute(
                select(Profile)
                .where(
                    Profile.subscription_status == SubscriptionStatus.ACTIVE.value,
                    Profile.is_admin == False,  # noqa: E712
                    Profile.subscription_end < now,
                    or_(
                        Profile.subscription_auto_renew == True,  # noqa: E712
                        Profile.access_granted_until > now,
                    ),
                )
                .order_by(Profile.subscription_end)
                .limit(limit)
            )
            return list(result.scalars().all())

    # --- Identity writes ---

    async def get_or_create(self, identity_id: str, email: str | None, name: str | None = None) -> Profile:
        """Return the profile for an identity, creating it on first authentication."""
        existing = await self.get_by_identity(identity_id)
        if existing is not None:
            if email and existing.email != email.strip().lower():
                async with self._sessions() as db:
                    profile = await db.get(Profile, existing.id)
                    profile.email = email.strip().lower()
                    await db.commit()
                    return profile
            return existing

        async with self._sessions() as db:
            profile = Profile(
                external_identity_id=identity_id,
                email=email.strip().lower() if email else None,
                name=name,
            )
            db.add(profile)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a first-login race for the same identity
                await db.rollback()
                winner = await self.get_by_identity(identity_id)
                if winner is None:
                    raise
                return winner
            logger.info("Created profile %s for identity %s", profile.id, mask_id(identity_id))
            return profile

    async def set_admin(self, profile_id: int, is_admin: bool) -> Profile:
        async with self._sessions() as db:
            profile = await db.get(Profile, profile_id)
            if profile is None:
                raise ProfileNotFound()
            profile.is_admin = is_admin
            await db.commit()
            return profile

    async def delete(self, profile_id: int) -> None:
        async with self._sessions() as db:
            async with db.begin():
                await db.execute(delete(DiscountOffer).where(DiscountOffer.profile_id == profile_id))
                await db.execute(delete(Notification).where(Notification.profile_id == profile_id))
                result = await db.execute(delete(Profile).where(Profile.id == profile_id))
            if result.rowcount == 0:
                raise ProfileNotFound()

    # --- Subscription writes (reconciliation engine only) ---

    async def _locked(self, db: AsyncSession, profile_id: int) -> Profile:
        result = await db.execute(select(Profile).where(Profile.id == profile_id).with_for_update())
        profile = result.scalar_one_or_none()
        if profile is None:
            raise ProfileNotFound()
        return profile

    async def apply_snapshot(
        self,
        profile_id: int,
        snapshot: SubscriptionSnapshot,
        observed_at: datetime,
        basis: Profile | None = None,
    ) -> tuple[Profile, bool]:
        """Atomically write a snapshot fetched at ``observed_at``.

        Returns the profile and whether anything changed. A snapshot observed
        before the row's last write is discarded, as is one derived from
        ``basis`` when an admin grant or revocation landed since. An identical
        snapshot leaves the row untouched.
        """
        async with self._sessions() as db:
            async with db.begin():
                profile = await self._locked(db, profile_id)
                if profile.last_webhook_update and profile.last_webhook_update > observed_at:
                    logger.info(
                        "Discarding snapshot for profile %s: observed %s, row written %s",
                        profile_id, observed_at.isoformat(), profile.last_webhook_update.isoformat(),
                    )
                    return profile, False
                if basis is not None and _overrides(profile) != _overrides(basis):
                    logger.info("Discarding snapshot for profile %s: access overrides changed", profile_id)
                    return profile, False

                values = snapshot.profile_values()
                if snapshot.customer_id is None:
                    # Never unlink a known customer because a lookup came back empty
                    values.pop("payment_customer_id")
                changed = {k: v for k, v in values.items() if getattr(profile, k) != v}
                if not changed:
                    return profile, False

                for key, value in changed.items():
                    setattr(profile, key, value)
                profile.last_webhook_update = now_utc()
            logger.info("Profile %s snapshot updated: %s", profile_id, sorted(changed))
            return profile, True

    async def claim_trial(self, profile_id: int, started_at: datetime, trial_end: datetime) -> bool:
        """Start the one-time trial. Returns False when another request already claimed it."""
        async with self._sessions() as db:
            result = await db.execute(
                update(Profile)
                .where(
                    Profile.id == profile_id,
                    Profile.trial_used == False,  # noqa: E712
                    Profile.is_admin == False,  # noqa: E712
                    Profile.subscription_status == SubscriptionStatus.FREE.value,
                )
                .values(
                    trial_used=True,
                    trial_end=trial_end,
                    subscription_status=SubscriptionStatus.ACTIVE.value,
                    subscription_start=started_at,
                    subscription_end=trial_end,
                    subscription_auto_renew=False,
                    last_webhook_update=started_at,
                    updated_at=started_at,
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def set_auto_renew(
        self, profile_id: int, auto_renew: bool, cancelled_at: datetime | None
    ) -> Profile:
        async with self._sessions() as db:
            async with db.begin():
                profile = await self._locked(db, profile_id)
                profile.subscription_auto_renew = auto_renew
                profile.subscription_cancelled_at = cancelled_at
                profile.last_webhook_update = now_utc()
            return profile

    async def grant_access(self, profile_id: int, until: datetime, now: datetime) -> Profile:
        """Record an admin grant. A profile without current access becomes ACTIVE until ``until``."""
        async with self._sessions() as db:
            async with db.begin():
                profile = await self._locked(db, profile_id)
                profile.access_granted_until = until
                current = profile.status is SubscriptionStatus.ACTIVE and (
                    profile.subscription_end is None or profile.subscription_end > now
                )
                if not current:
                    profile.subscription_status = SubscriptionStatus.ACTIVE.value
                    profile.subscription_start = now
                    profile.subscription_end = until
                    profile.subscription_auto_renew = False
                    profile.subscription_cancelled_at = None
                profile.last_webhook_update = now
            return profile

    async def revoke_access(self, profile_id: int, now: datetime) -> Profile:
        """End all access now: grants and trials stop, status becomes EXPIRED."""
        async with self._sessions() as db:
            async with db.begin():
                profile = await self._locked(db, profile_id)
                profile.access_granted_until = None
                profile.access_revoked_at = now
                if profile.trial_end is not None and profile.trial_end > now:
                    profile.trial_end = now
                profile.subscription_status = SubscriptionStatus.EXPIRED.value
                profile.subscription_end = now
                profile.subscription_auto_renew = False
                profile.last_webhook_update = now
            return profile

    async def expire_lapsed(self, now: datetime) -> int:
        """Move un-renewed ACTIVE profiles past their end date to EXPIRED."""
        async with self._sessions() as db:
            result = await db.execute(
                update(Profile)
                .where(
                    Profile.subscription_status == SubscriptionStatus.ACTIVE.value,
                    Profile.is_admin == False,  # noqa: E712
                    Profile.subscription_end < now,
                    or_(
                        Profile.subscription_auto_renew == False,  # noqa: E712
                        and_(Profile.trial_end.is_not(None), Profile.subscription_end == Profile.trial_end),
                    ),
                    or_(Profile.access_granted_until.is_(None), Profile.access_granted_until <= now),
                )
                .values(
                    subscription_status=SubscriptionStatus.EXPIRED.value,
                    last_webhook_update=now,
                    updated_at=now,
                )
            )
            await db.commit()
            return result.rowcount
