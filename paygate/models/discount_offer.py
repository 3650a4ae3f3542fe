"""DiscountOffer model — a retention price offered after the user rejected a negotiation."""

from datetime import datetime

from sqlalchemy import Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paygate.utils import now_utc
from .base import Base, UTCDateTime


class DiscountOffer(Base):
    __tablename__ = "discount_offers"
    __table_args__ = (
        UniqueConstraint("profile_id", "payment_subscription_id", name="uq_discount_offer_profile_sub"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("profiles.id", ondelete="CASCADE"), index=True, nullable=False
    )
    payment_subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    original_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    user_input_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    offer_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_percent: Mapped[float] = mapped_column(Float, nullable=False)
    savings_cents: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True, nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc, onupdate=now_utc)

    # Relationships
    profile: Mapped["Profile"] = relationship(back_populates="discount_offers")
