"""Profile model — one row per authenticated identity, holding the subscription snapshot."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paygate.utils import now_utc
from .base import Base, UTCDateTime


class SubscriptionStatus(str, enum.Enum):
    FREE = "FREE"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_identity_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)

    # Subscription snapshot (written only by the reconciliation engine)
    subscription_status: Mapped[str] = mapped_column(
        String(16), default=SubscriptionStatus.FREE.value, nullable=False
    )
    subscription_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    subscription_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payment_customer_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    payment_subscription_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    payment_price_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_product_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    subscription_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discount_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discount_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_auto_renew: Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_webhook_update: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Trial
    trial_used: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Admin overrides
    access_granted_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    access_revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc, onupdate=now_utc)

    # Relationships
    discount_offers: Mapped[list["DiscountOffer"]] = relationship(
        back_populates="profile", cascade="all, delete-orphan", passive_deletes=True
    )
    notifications: Mapped[list["Notification"]] = relationship(
        back_populates="profile", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.subscription_status)
