"""
API request and response models for StagePass REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only bound field lengths. The real input rules (email grammar,
username charset, password policy) live in auth/validation.py so the API and
the in-process backend reject exactly the same inputs with the same
field-level errors.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import (
    AuthResponse,
    Identity,
    RefreshResult,
    Role,
    SubscriptionStatus,
    SubscriptionTier,
)

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=255)
    username: str = Field(max_length=20)
    password: str = Field(max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=50)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is email OR username."""

    identifier: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout.

    Either this refresh token or a Bearer access token identifies the session.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(max_length=255)


class IdentityPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Admin only."""

    role: Optional[Role] = None
    subscription_tier: Optional[SubscriptionTier] = None
    subscription_status: Optional[SubscriptionStatus] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    """Public view of an identity. There is no password field to leak."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    display_name: str
    role: Role
    subscription_tier: SubscriptionTier
    subscription_status: SubscriptionStatus
    is_verified: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_active_at: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(**identity.to_dict())


class TokenResponse(BaseModel):
    """Response for register / login / password change: identity plus a token pair."""

    model_config = ConfigDict(frozen=True)

    user: IdentityResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_expires_at: datetime

    @classmethod
    def from_auth(cls, result: AuthResponse) -> "TokenResponse":
        return cls(
            user=IdentityResponse.from_identity(result.identity),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
            access_expires_at=result.tokens.access_expires_at,
        )


class RefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh.

    refresh_token is only present when server-side rotation is enabled.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_token: Optional[str] = None

    @classmethod
    def from_result(cls, result: RefreshResult) -> "RefreshResponse":
        remaining = (result.access_expires_at - datetime.now(result.access_expires_at.tzinfo)).total_seconds()
        return cls(
            access_token=result.access_token,
            expires_in=max(0, int(remaining)),
            access_expires_at=result.access_expires_at,
            refresh_token=result.refresh_token,
        )


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user: IdentityResponse
    role_display_name: str
    tier_display_name: str
    permissions: list[PermissionInfo]


class AccessResponse(BaseModel):
    """Composite gate results for GET /api/v1/auth/access."""

    model_config = ConfigDict(frozen=True)

    premium_content: bool
    vip_content: bool
    moderate: bool
    manage_users: bool
    view_analytics: bool
    admin: bool


class PasswordStrengthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int
    max_score: int
    label: str
    acceptable: bool
    feedback: list[str]


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
