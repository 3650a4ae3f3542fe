"""Countdown timer routes."""

from fastapi import APIRouter, Depends

from paygate.container import ApplicationContainer, get_container
from paygate.schemas.timer import TimerOut, TimerUpdate
from paygate.services.auth_service import require_admin

router = APIRouter(prefix="/timer", tags=["timer"])


@router.get("", response_model=TimerOut)
async def get_timer(container: ApplicationContainer = Depends(get_container)):
    return TimerOut.model_validate(await container.timer.get_timer())


@router.post("/settings", response_model=TimerOut, dependencies=[Depends(require_admin)])
async def update_timer(
    body: TimerUpdate,
    container: ApplicationContainer = Depends(get_container),
):
    state = await container.timer.update_timer(
        duration_hours=body.duration_hours,
        message=body.message,
        price_message=body.price_message,
    )
    return TimerOut.model_validate(state)
