"""TimerSettings model — singleton marketing countdown."""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from paygate.constants import (
    TIMER_DEFAULT_HOURS,
    TIMER_DEFAULT_MESSAGE,
    TIMER_DEFAULT_PRICE_MESSAGE,
)
from paygate.utils import now_utc
from .base import Base, UTCDateTime


class TimerSettings(Base):
    __tablename__ = "timer_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)
    duration_hours: Mapped[int] = mapped_column(Integer, default=TIMER_DEFAULT_HOURS)
    message: Mapped[str] = mapped_column(String(200), default=TIMER_DEFAULT_MESSAGE)
    price_message: Mapped[str] = mapped_column(String(100), default=TIMER_DEFAULT_PRICE_MESSAGE)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc, onupdate=now_utc)
