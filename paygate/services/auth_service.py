"""Identity tokens and FastAPI auth dependencies.

Tokens are issued by the hosted identity provider and signed with a shared
secret. The profile row is created on the first authenticated request; the
admin flag always comes from the database, never from the token.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, UTC

import jwt
from fastapi import Depends, Request

from paygate.config import get_settings
from paygate.constants import COOKIE_NAME
from paygate.errors import AuthenticationRequired, Forbidden
from paygate.models import Profile


@dataclass(frozen=True)
class Identity:
    subject: str
    email: str | None = None
    name: str | None = None
    auth_time: datetime | None = None


def create_token(
    subject: str,
    email: str | None = None,
    name: str | None = None,
    auth_time: datetime | None = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Sign an identity token (CLI, local development and tests)."""
    settings = get_settings()
    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "exp": now + expires_in,
        "iat": now,
        "auth_time": int((auth_time or now).timestamp()),
    }
    if email:
        payload["email"] = email
    if name:
        payload["name"] = name
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Identity:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer or None,
            audience=settings.jwt_audience or None,
            options={"require": ["exp", "sub"], "verify_aud": bool(settings.jwt_audience)},
        )
    except jwt.InvalidTokenError:
        raise AuthenticationRequired("Invalid or expired session")

    auth_time = payload.get("auth_time")
    return Identity(
        subject=str(payload["sub"]),
        email=payload.get("email"),
        name=payload.get("name"),
        auth_time=datetime.fromtimestamp(auth_time, tz=UTC) if isinstance(auth_time, int | float) else None,
    )


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


async def get_identity(request: Request) -> Identity:
    """FastAPI dependency: decode the bearer token or session cookie, or raise 401."""
    token = _token_from_request(request)
    if not token:
        raise AuthenticationRequired("Not authenticated")
    return decode_token(token)


async def get_current_profile(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> Profile:
    """FastAPI dependency: the caller's profile, created on first use."""
    store = request.app.state.container.profile_store
    return await store.get_or_create(identity.subject, identity.email, identity.name)


async def require_admin(profile: Profile = Depends(get_current_profile)) -> Profile:
    if not profile.is_admin:
        raise Forbidden("Admin access required")
    return profile


def check_recent_auth(identity: Identity, max_age_seconds: int | None = None) -> None:
    """Destructive actions need a sign-in (password / 2FA) within the last few minutes."""
    max_age = max_age_seconds if max_age_seconds is not None else get_settings().reauth_max_age_seconds
    if identity.auth_time is None:
        raise AuthenticationRequired("Please sign in again to continue")
    age = (datetime.now(UTC) - identity.auth_time).total_seconds()
    if age > max_age:
        raise AuthenticationRequired("Please sign in again to continue")


async def require_recent_auth(identity: Identity = Depends(get_identity)) -> Identity:
    check_recent_auth(identity)
    return identity
