"""Countdown timer Pydantic schemas."""

from datetime import datetime

from pydantic import Field

from paygate.constants import (
    TIMER_MAX_HOURS,
    TIMER_MESSAGE_MAX_LENGTH,
    TIMER_PRICE_MESSAGE_MAX_LENGTH,
)
from .base import ApiModel


class TimerOut(ApiModel):
    start_time: datetime
    end_time: datetime
    duration_hours: int
    message: str
    price_message: str
    remaining_hours: float
    is_expired: bool


class TimerUpdate(ApiModel):
    duration_hours: int | None = Field(None, ge=1, le=TIMER_MAX_HOURS)
    message: str | None = Field(None, min_length=1, max_length=TIMER_MESSAGE_MAX_LENGTH)
    price_message: str | None = Field(None, min_length=1, max_length=TIMER_PRICE_MESSAGE_MAX_LENGTH)
