"""Discount offer Pydantic schemas."""

from datetime import datetime

from pydantic import Field, model_validator

from .base import ApiModel


class OfferOut(ApiModel):
    id: int
    payment_subscription_id: str
    original_price_cents: int
    user_input_cents: int
    offer_price_cents: int
    discount_percent: float
    savings_cents: int
    expires_at: datetime
    accepted_at: datetime | None = None


class ActiveOfferResponse(ApiModel):
    has_offer: bool
    offer: OfferOut | None = None


class CalculateOfferRequest(ApiModel):
    user_input_cents: int = Field(gt=0)


class OfferTermsOut(ApiModel):
    offer_price_cents: int
    discount_percent: float
    savings_cents: int


class RejectOfferRequest(ApiModel):
    subscription_id: str = Field(min_length=1)
    original_price_cents: int = Field(gt=0)
    user_input_cents: int = Field(gt=0)
    offer_price_cents: int = Field(gt=0)
    discount_percent: float = Field(ge=0, le=100)

    @model_validator(mode="after")
    def _check_order(self) -> "RejectOfferRequest":
        if not self.offer_price_cents < self.user_input_cents < self.original_price_cents:
            raise ValueError("offerPriceCents < userInputCents < originalPriceCents must hold")
        return self


class OfferIdRequest(ApiModel):
    offer_id: int


class ApplyCouponData(ApiModel):
    subscription_id: str
    percent_off: float
    offer_price_cents: int
    original_price_cents: int
    coupon_name: str
    coupon_id: str | None = None


class AcceptOfferResponse(ApiModel):
    offer: OfferOut
    apply_coupon: ApplyCouponData


class OfferStats(ApiModel):
    total_offers: int
    active_offers: int
    expired_offers: int
    accepted_offers: int
    avg_discount_percent: float
