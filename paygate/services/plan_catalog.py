"""Display names for Stripe prices, cached per process."""

import logging

from paygate.constants import PLAN_NAME_CACHE_SIZE, PLAN_NAME_TTL_SECONDS
from paygate.errors import UpstreamUnavailable
from paygate.services.payment_gateway import PaymentGateway
from paygate.services.throttling import TTLCache

logger = logging.getLogger(__name__)


def plan_name(price: dict) -> str | None:
    product = price.get("product")
    if isinstance(product, dict) and product.get("name"):
        return product["name"]
    return price.get("nickname")


class PlanCatalog:
    def __init__(self, gateway: PaymentGateway, cache: TTLCache | None = None):
        self._gateway = gateway
        self._cache = cache or TTLCache(max_entries=PLAN_NAME_CACHE_SIZE)

    async def name_for(self, price_id: str | None) -> str | None:
        """Product name for a price id. Never raises; a Stripe outage serves the last known name."""
        if not price_id:
            return None
        cached = self._cache.get(price_id)
        if cached is not None:
            return cached or None
        try:
            price = await self._gateway.retrieve_price(price_id)
        except UpstreamUnavailable:
            stale = self._cache.get_stale(price_id)
            logger.info("Plan name for %s unavailable, using %s", price_id, "stale" if stale else "none")
            return stale or None
        name = plan_name(price) if price else None
        self._cache.set(price_id, name or "", PLAN_NAME_TTL_SECONDS)
        return name

    def clear(self) -> None:
        self._cache.clear()
