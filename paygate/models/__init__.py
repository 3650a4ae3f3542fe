"""SQLAlchemy models for the subscription service."""

from .base import Base, UTCDateTime
from .profile import Profile, SubscriptionStatus
from .discount_offer import DiscountOffer
from .timer_settings import TimerSettings
from .webhook_event import WebhookEvent
from .notification import Notification

__all__ = [
    "Base",
    "UTCDateTime",
    "Profile",
    "SubscriptionStatus",
    "DiscountOffer",
    "TimerSettings",
    "WebhookEvent",
    "Notification",
]
