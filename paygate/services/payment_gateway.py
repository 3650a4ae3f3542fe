"""Stripe gateway — the only module that talks to the Stripe API.

Every call runs in a worker thread with a hard timeout and no SDK retries.
Any failure surfaces as ``UpstreamUnavailable`` so callers never see raw
Stripe exceptions.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

import stripe

from paygate.constants import CHECKOUT_LIST_LIMIT, SUBSCRIPTION_LIST_LIMIT
from paygate.errors import InvalidSignature, UpstreamUnavailable
from paygate.utils import mask_email, mask_id

logger = logging.getLogger(__name__)


def to_plain(value: Any) -> Any:
    """Recursively convert StripeObjects into plain dicts and lists."""
    if hasattr(value, "to_dict") and not isinstance(value, type):
        value = value.to_dict()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


class PaymentGateway:
    """Typed async wrapper over the Stripe SDK."""

    def __init__(self, api_key: str, webhook_secret: str, timeout: float = 5.0):
        self._webhook_secret = webhook_secret
        self._timeout = timeout
        stripe.api_key = api_key
        stripe.max_network_retries = 0

    async def _call(self, operation: str, fn, *args, missing_ok: bool = False, **kwargs) -> Any:
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise UpstreamUnavailable("Payment provider timed out")
        except stripe.InvalidRequestError as e:
            if missing_ok and getattr(e, "code", None) == "resource_missing":
                logger.info("Stripe %s: resource missing", operation)
                return None
            logger.warning("Stripe %s rejected: %s", operation, e)
            raise UpstreamUnavailable("Payment provider rejected the request") from e
        except stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s", operation, e)
            raise UpstreamUnavailable("Payment provider request failed") from e
        return to_plain(result)

    # --- Webhooks ---

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        """Verify the Stripe-Signature header and return the event as a dict."""
        if not signature or not self._webhook_secret:
            raise InvalidSignature()
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError:
            raise InvalidSignature()
        except ValueError:
            raise InvalidSignature("Invalid payload")
        return to_plain(event)

    # --- Customers ---

    async def find_customer_by_email(self, email: str) -> dict | None:
        result = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        customers = result.get("data") or []
        if not customers:
            logger.info("No Stripe customer for %s", mask_email(email))
            return None
        return customers[0]

    # --- Subscriptions ---

    async def list_subscriptions(
        self, customer_id: str, limit: int = SUBSCRIPTION_LIST_LIMIT
    ) -> list[dict]:
        result = await self._call(
            "subscription list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=limit,
            expand=["data.discounts"],
            missing_ok=True,
        )
        if result is None:
            return []
        return result.get("data") or []

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict:
        logger.info("Setting cancel_at_period_end=%s on %s", cancel, mask_id(subscription_id))
        return await self._call(
            "subscription modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel,
        )

    async def cancel_subscription(self, subscription_id: str) -> dict | None:
        """Cancel immediately. Already-deleted subscriptions return None."""
        logger.info("Cancelling subscription %s immediately", mask_id(subscription_id))
        return await self._call(
            "subscription cancel", stripe.Subscription.cancel, subscription_id, missing_ok=True
        )

    # --- Catalog ---

    async def retrieve_price(self, price_id: str) -> dict | None:
        """Price with its product expanded. Deleted prices return None."""
        return await self._call(
            "price retrieve",
            stripe.Price.retrieve,
            price_id,
            expand=["product"],
            missing_ok=True,
        )

    # --- Discounts ---

    async def create_coupon(self, percent_off: float, name: str) -> dict:
        return await self._call(
            "coupon create",
            stripe.Coupon.create,
            percent_off=percent_off,
            duration="once",
            name=name,
        )

    async def apply_coupon(self, subscription_id: str, coupon_id: str) -> dict:
        logger.info("Applying coupon %s to %s", coupon_id, mask_id(subscription_id))
        return await self._call(
            "subscription discount",
            stripe.Subscription.modify,
            subscription_id,
            discounts=[{"coupon": coupon_id}],
        )

    # --- Checkout ---

    async def list_completed_checkouts(
        self,
        *,
        customer_id: str | None = None,
        email: str | None = None,
        since: datetime,
    ) -> list[dict]:
        """Completed checkout sessions created after ``since``."""
        params: dict[str, Any] = {
            "status": "complete",
            "created": {"gte": int(since.timestamp())},
            "limit": CHECKOUT_LIST_LIMIT,
        }
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_details"] = {"email": email}
        else:
            return []
        result = await self._call("checkout list", stripe.checkout.Session.list, **params)
        return result.get("data") or []
