"""Marketing countdown timer (process-wide singleton row)."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.constants import (
    TIMER_MAX_HOURS,
    TIMER_MESSAGE_MAX_LENGTH,
    TIMER_PRICE_MESSAGE_MAX_LENGTH,
    TIMER_SINGLETON_ID,
)
from paygate.errors import ValidationError
from paygate.models import TimerSettings
from paygate.utils import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerState:
    start_time: datetime
    end_time: datetime
    duration_hours: int
    message: str
    price_message: str
    remaining_hours: float
    is_expired: bool


def _state(timer: TimerSettings, now: datetime) -> TimerState:
    end = timer.start_time + timedelta(hours=timer.duration_hours)
    remaining = max((end - now).total_seconds() / 3600, 0.0)
    return TimerState(
        start_time=timer.start_time,
        end_time=end,
        duration_hours=timer.duration_hours,
        message=timer.message,
        price_message=timer.price_message,
        remaining_hours=round(remaining, 2),
        is_expired=remaining <= 0,
    )


class TimerService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get_timer(self) -> TimerState:
        """Current countdown; an elapsed window restarts from now."""
        now = now_utc()
        async with self._sessions() as db:
            timer = await db.get(TimerSettings, TIMER_SINGLETON_ID)
            if timer is None:
                timer = TimerSettings(id=TIMER_SINGLETON_ID, start_time=now)
                db.add(timer)
                await db.commit()
                logger.info("Created default timer settings")
            elif timer.start_time + timedelta(hours=timer.duration_hours) <= now:
                timer.start_time = now
                await db.commit()
                logger.info("Timer window elapsed, restarted")
            return _state(timer, now)

    async def update_timer(
        self,
        *,
        duration_hours: int | None = None,
        message: str | None = None,
        price_message: str | None = None,
    ) -> TimerState:
        """Admin update; always restarts the window."""
        if duration_hours is not None and not 1 <= duration_hours <= TIMER_MAX_HOURS:
            raise ValidationError(f"Duration must be between 1 and {TIMER_MAX_HOURS} hours")
        if message is not None and not 1 <= len(message.strip()) <= TIMER_MESSAGE_MAX_LENGTH:
            raise ValidationError(f"Message must be 1-{TIMER_MESSAGE_MAX_LENGTH} characters")
        if price_message is not None and not 1 <= len(price_message.strip()) <= TIMER_PRICE_MESSAGE_MAX_LENGTH:
            raise ValidationError(f"Price message must be 1-{TIMER_PRICE_MESSAGE_MAX_LENGTH} characters")

        now = now_utc()
        async with self._sessions() as db:
            timer = await db.get(TimerSettings, TIMER_SINGLETON_ID)
            if timer is None:
                timer = TimerSettings(id=TIMER_SINGLETON_ID)
                db.add(timer)
            timer.start_time = now
            if duration_hours is not None:
                timer.duration_hours = duration_hours
            if message is not None:
                timer.message = message.strip()
            if price_message is not None:
                timer.price_message = price_message.strip()
            await db.commit()
            logger.info("Timer settings updated: %sh", timer.duration_hours)
            return _state(timer, now)
