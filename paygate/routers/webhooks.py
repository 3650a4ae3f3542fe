"""Webhook routes — Stripe."""

import logging

from fastapi import APIRouter, Depends, Header, Request

from paygate.container import ApplicationContainer, get_container

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payments_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    container: ApplicationContainer = Depends(get_container),
):
    payload = await request.body()
    result = await container.ingress.handle(payload, stripe_signature)
    return {"status": "ok", "result": result.status}
