"""Retention offer routes, mounted under /subscription."""

import logging

from fastapi import APIRouter, Depends, Query

from paygate.container import ApplicationContainer, get_container
from paygate.errors import ValidationError
from paygate.models import Profile
from paygate.schemas.offers import (
    AcceptOfferResponse,
    ActiveOfferResponse,
    ApplyCouponData,
    CalculateOfferRequest,
    OfferIdRequest,
    OfferOut,
    OfferTermsOut,
    RejectOfferRequest,
)
from paygate.services.auth_service import get_current_profile
from paygate.services.discount_offers import apply_accepted_offer, calculate_offer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/subscription", tags=["offers"])


def _own_subscription(profile: Profile, subscription_id: str) -> None:
    if profile.payment_subscription_id != subscription_id:
        raise ValidationError("Subscription does not belong to this account")


@router.get("/custom-offer", response_model=ActiveOfferResponse)
async def get_custom_offer(
    subscription_id: str = Query(..., alias="subscriptionId", min_length=1),
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    offer = await container.offers.get_active_offer(profile.id, subscription_id)
    if offer is None:
        return ActiveOfferResponse(has_offer=False, offer=None)
    return ActiveOfferResponse(has_offer=True, offer=OfferOut.model_validate(offer))


@router.post("/custom-offer/calculate", response_model=OfferTermsOut)
async def calculate_custom_offer(
    body: CalculateOfferRequest,
    profile: Profile = Depends(get_current_profile),
):
    return OfferTermsOut.model_validate(calculate_offer(body.user_input_cents))


@router.post("/custom-offer/reject", response_model=OfferOut)
async def reject_custom_offer(
    body: RejectOfferRequest,
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    _own_subscription(profile, body.subscription_id)
    offer = await container.offers.store_rejected_offer(
        profile.id,
        body.subscription_id,
        original_price_cents=body.original_price_cents,
        user_input_cents=body.user_input_cents,
        offer_price_cents=body.offer_price_cents,
        discount_percent=body.discount_percent,
    )
    return OfferOut.model_validate(offer)


@router.post("/custom-offer/accept", response_model=AcceptOfferResponse)
async def accept_custom_offer(
    body: OfferIdRequest,
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    accepted = await container.offers.accept_offer(body.offer_id, profile.id)
    return AcceptOfferResponse(
        offer=OfferOut.model_validate(accepted.offer),
        apply_coupon=ApplyCouponData.model_validate(accepted.apply_coupon),
    )


@router.post("/apply-coupon", response_model=ApplyCouponData)
async def apply_coupon(
    body: OfferIdRequest,
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    data = await apply_accepted_offer(container.offers, container.gateway, profile, body.offer_id)
    return ApplyCouponData.model_validate(data)
