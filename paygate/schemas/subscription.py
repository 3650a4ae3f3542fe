"""Subscription-related Pydantic schemas."""

from datetime import datetime

from .base import ApiModel


class AccessStatus(ApiModel):
    has_access: bool
    status: str
    can_start_trial: bool
    reason: str
    access_until: datetime | None = None
    source: str
    is_admin: bool = False
    product_id: str | None = None


class ProfileSnapshot(ApiModel):
    id: int
    email: str | None = None
    is_admin: bool
    subscription_status: str
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    payment_customer_id: str | None = None
    payment_subscription_id: str | None = None
    payment_price_id: str | None = None
    payment_product_id: str | None = None
    subscription_amount: int | None = None
    original_amount: int | None = None
    discount_percent: int | None = None
    discount_name: str | None = None
    subscription_auto_renew: bool
    subscription_cancelled_at: datetime | None = None
    last_webhook_update: datetime | None = None
    trial_used: bool
    trial_end: datetime | None = None
    access_granted_until: datetime | None = None


class SubscriptionDetails(ProfileSnapshot):
    plan_name: str | None = None


class ForceSyncResponse(ApiModel):
    changed: bool
    profile: ProfileSnapshot


class TrialStarted(ApiModel):
    trial_end: datetime


class CancelResponse(ApiModel):
    cancel_at_period_end: bool = True
    access_until: datetime | None = None


class AutoRenewRequest(ApiModel):
    auto_renew: bool


class AutoRenewResponse(ApiModel):
    auto_renew: bool
    access_until: datetime | None = None
