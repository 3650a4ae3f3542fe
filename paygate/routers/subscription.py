"""Subscription routes — access checks, sync, trial and cancellation."""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from paygate.container import ApplicationContainer, get_container
from paygate.models import Profile
from paygate.schemas.subscription import (
    AccessStatus,
    AutoRenewRequest,
    AutoRenewResponse,
    CancelResponse,
    ForceSyncResponse,
    ProfileSnapshot,
    SubscriptionDetails,
    TrialStarted,
)
from paygate.services.access_gate import UNAVAILABLE
from paygate.services.auth_service import (
    Identity,
    check_recent_auth,
    get_current_profile,
    get_identity,
    require_recent_auth,
)
from paygate.services.reconciliation import Trigger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/subscription", tags=["subscription"])


@router.get("/status", response_model=AccessStatus)
async def subscription_status(
    force_refresh: bool = Query(False, alias="forceRefresh"),
    product_ids: list[str] | None = Query(None, alias="productIds"),
    identity: Identity = Depends(get_identity),
    container: ApplicationContainer = Depends(get_container),
):
    decision = await container.access_gate.check_access(
        identity, force_refresh=force_refresh, product_ids=product_ids
    )
    body = AccessStatus.model_validate(decision)
    if decision.status == UNAVAILABLE and decision.retry_after:
        return JSONResponse(
            status_code=503,
            content=body.model_dump(mode="json", by_alias=True),
            headers={"Retry-After": str(decision.retry_after)},
        )
    return body


@router.get("", response_model=SubscriptionDetails)
async def subscription_details(
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    details = SubscriptionDetails.model_validate(profile)
    details.plan_name = await container.plans.name_for(profile.payment_price_id)
    return details


@router.post("/force-sync", response_model=ForceSyncResponse)
async def force_sync(
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    result = await container.engine.reconcile(profile_id=profile.id, trigger=Trigger.FORCE_SYNC)
    return ForceSyncResponse(
        changed=result.changed,
        profile=ProfileSnapshot.model_validate(result.profile or profile),
    )


@router.post("/start-trial", response_model=TrialStarted)
async def start_trial(
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    trial_end = await container.trials.start_trial(profile)
    return TrialStarted(trial_end=trial_end)


@router.post("/cancel", response_model=CancelResponse, dependencies=[Depends(require_recent_auth)])
async def cancel_subscription(
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    access_until = await container.trials.cancel_with_grace(profile)
    return CancelResponse(cancel_at_period_end=True, access_until=access_until)


@router.post("/toggle-autorenew", response_model=AutoRenewResponse)
async def toggle_autorenew(
    body: AutoRenewRequest,
    identity: Identity = Depends(get_identity),
    profile: Profile = Depends(get_current_profile),
    container: ApplicationContainer = Depends(get_container),
):
    if not body.auto_renew:
        check_recent_auth(identity, container.settings.reauth_max_age_seconds)
    updated = await container.trials.set_auto_renew(profile, body.auto_renew)
    return AutoRenewResponse(
        auto_renew=updated.subscription_auto_renew,
        access_until=updated.subscription_end,
    )
