"""Admin routes — profile management and offer monitoring."""

from fastapi import APIRouter, Depends, Response

from paygate.container import ApplicationContainer, get_container
from paygate.models import Profile
from paygate.schemas.admin import (
    AdminAccessResponse,
    AdminCancelResponse,
    AdminReconcileResponse,
    AdminToggleResponse,
    GrantAccessRequest,
    RevokeAccessRequest,
)
from paygate.schemas.offers import OfferStats
from paygate.services.auth_service import require_admin

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/profiles/{profile_id}/toggle-admin", response_model=AdminToggleResponse)
async def toggle_admin(
    profile_id: int,
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    updated = await container.admin.toggle_admin(admin, profile_id)
    return AdminToggleResponse(id=updated.id, is_admin=updated.is_admin)


@router.post("/profiles/{profile_id}/reconcile", response_model=AdminReconcileResponse)
async def reconcile_profile(
    profile_id: int,
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    result = await container.admin.reconcile(profile_id)
    return AdminReconcileResponse(
        profile_id=result.profile_id,
        status=result.status.value,
        access_until=result.access_until,
        changed=result.changed,
    )


@router.delete("/profiles/{profile_id}", status_code=204)
async def delete_profile(
    profile_id: int,
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    await container.admin.delete_profile(admin, profile_id)
    return Response(status_code=204)


@router.post("/profiles/{profile_id}/cancel-subscription", response_model=AdminCancelResponse)
async def cancel_subscription(
    profile_id: int,
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    cancelled, result = await container.admin.cancel_subscription(admin, profile_id)
    return AdminCancelResponse(
        profile_id=result.profile_id,
        status=result.status.value,
        access_until=result.access_until,
        changed=result.changed,
        cancelled=cancelled,
    )


def _access_response(profile: Profile) -> AdminAccessResponse:
    return AdminAccessResponse(
        profile_id=profile.id,
        status=profile.status.value,
        access_until=profile.subscription_end,
        access_granted_until=profile.access_granted_until,
    )


@router.post("/profiles/{profile_id}/grant-access", response_model=AdminAccessResponse)
async def grant_access(
    profile_id: int,
    body: GrantAccessRequest,
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    profile = await container.admin.grant_access(admin, profile_id, body.days, body.reason)
    return _access_response(profile)


@router.post("/profiles/{profile_id}/revoke-access", response_model=AdminAccessResponse)
async def revoke_access(
    profile_id: int,
    body: RevokeAccessRequest | None = None,
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    profile = await container.admin.revoke_access(admin, profile_id, body.reason if body else None)
    return _access_response(profile)


@router.get("/offers/stats", response_model=OfferStats)
async def offer_stats(
    admin: Profile = Depends(require_admin),
    container: ApplicationContainer = Depends(get_container),
):
    return OfferStats.model_validate(await container.offers.stats())
