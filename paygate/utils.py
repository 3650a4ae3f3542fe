"""Shared utility functions for Paygate."""

import logging
from datetime import datetime, UTC

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def from_timestamp(value: int | float | None) -> datetime | None:
    """Convert a Unix timestamp (as sent by Stripe) to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def mask_id(value: str | int | None, keep: int = 8) -> str:
    """Shorten an identifier for log output."""
    if value is None:
        return "-"
    text = str(value)
    return text if len(text) <= keep else f"{text[:keep]}…"


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return "-"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Stripe logs every request at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)
