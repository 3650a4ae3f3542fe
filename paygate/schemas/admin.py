"""Admin Pydantic schemas."""

from datetime import datetime

from pydantic import Field

from paygate.constants import ADMIN_GRANT_MAX_DAYS, ADMIN_REASON_MAX_LENGTH

from .base import ApiModel


class AdminToggleResponse(ApiModel):
    id: int
    is_admin: bool


class AdminReconcileResponse(ApiModel):
    profile_id: int
    status: str
    access_until: datetime | None = None
    changed: bool


class AdminCancelResponse(AdminReconcileResponse):
    cancelled: int


class GrantAccessRequest(ApiModel):
    days: int = Field(ge=1, le=ADMIN_GRANT_MAX_DAYS)
    reason: str | None = Field(None, max_length=ADMIN_REASON_MAX_LENGTH)


class RevokeAccessRequest(ApiModel):
    reason: str | None = Field(None, max_length=ADMIN_REASON_MAX_LENGTH)


class AdminAccessResponse(ApiModel):
    profile_id: int
    status: str
    access_until: datetime | None = None
    access_granted_until: datetime | None = None
