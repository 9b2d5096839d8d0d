"""
api/routes/v1/auth.py -- Authentication, session and account REST endpoints.

Routes:
  POST  /api/v1/auth/register          -- create account; returns identity + token pair (201)
  POST  /api/v1/auth/login             -- email-or-username login; returns identity + token pair
  POST  /api/v1/auth/refresh           -- new access token from a refresh token
  POST  /api/v1/auth/logout            -- revoke the stored refresh reference
  GET   /api/v1/auth/me                -- current identity + resolved permissions
  GET   /api/v1/auth/access            -- composite content / capability gates
  POST  /api/v1/auth/password          -- change password; reissues the token pair
  POST  /api/v1/auth/password-strength -- score a candidate password (public)
  GET   /api/v1/auth/users             -- list identities (MANAGE_USERS)
  PATCH /api/v1/auth/users/{id}        -- change role / tier / status (MANAGE_USERS)

Security:
  POST /login and /register are rate-limited per IP (Settings.login_rate_limit).
  AuthService.login() performs one bcrypt check whether or not the identifier
  exists -- never look the identity up separately here.
  Every response that carries a token is sent with Cache-Control: no-store.
  PATCH /users/{id} blocks an admin from demoting themselves.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccessResponse,
    ChangePasswordRequest,
    IdentityPatch,
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    PermissionInfo,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    TokenResponse,
)
from auth.dependencies import bearer_token, get_current_identity, require_permission
from auth.errors import AuthError
from auth.models import Identity, Permission, Role
from auth.permissions import (
    access_summary,
    permission_display_name,
    permissions_of,
    role_display_name,
    tier_display_name,
)
from auth.service import AuthService
from auth.validation import MAX_STRENGTH_SCORE, password_strength
from core.config import get_settings

logger = logging.getLogger("stagepass.api.auth")

# Auth policy:
# - POST  /auth/register, /auth/login, /auth/refresh:  public -- they establish a session
# - POST  /auth/logout:             refresh token in body, or Bearer access token
# - POST  /auth/password-strength:  public -- the signup form calls this as the user types
# - GET   /auth/me, /auth/access:   requires auth (get_current_identity)
# - POST  /auth/password:           requires auth (get_current_identity)
# - GET   /auth/users:              requires MANAGE_USERS
# - PATCH /auth/users/{id}:         requires MANAGE_USERS
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _error_response(error: AuthError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if error.http_status == 401 else None
    return _no_store(JSONResponse(status_code=error.http_status, content={"error": error.to_dict()}, headers=headers))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account (role FAN, tier FREE) and start its session."""
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    result = _service(request).register(body.email, body.username, body.password, body.display_name)
    if isinstance(result, AuthError):
        return _error_response(result)
    return _no_store(JSONResponse(status_code=201, content=TokenResponse.from_auth(result).model_dump(mode="json")))


@limiter.limit(login_rate_limit)  # brute-force mitigation
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email or username plus password.

    Wrong identifier and wrong password produce the same invalid_credentials
    response so account existence is not leaked.
    """
    result = _service(request).login(body.identifier, body.password)
    if isinstance(result, AuthError):
        return _error_response(result)
    return _no_store(JSONResponse(status_code=200, content=TokenResponse.from_auth(result).model_dump(mode="json")))


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access token.

    When server-side rotation is enabled the response also carries the
    replacement refresh token; the presented one stops working.
    """
    result = _service(request).refresh(body.refresh_token)
    if isinstance(result, AuthError):
        return _error_response(result)
    return _no_store(JSONResponse(status_code=200, content=RefreshResponse.from_result(result).model_dump(mode="json")))


@router.post("/auth/logout")
def logout(request: Request, body: LogoutRequest | None = None) -> JSONResponse:
    """Revoke the session's refresh reference.

    The session is named by the refresh token in the body, or failing that by
    the Bearer access token. Access tokens already issued stay valid until
    they expire.
    """
    service = _service(request)
    if body is not None and body.refresh_token:
        error = service.logout_with_refresh_token(body.refresh_token)
        if error is not None:
            return _error_response(error)
    elif bearer_token(request) is not None:
        identity = get_current_identity(request)
        service.logout(identity.id)
    else:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "A refresh token or access token is required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return JSONResponse(content={"message": "Logged out."})


@router.post("/auth/password-strength", response_model=PasswordStrengthResponse)
async def check_password_strength(body: PasswordStrengthRequest) -> PasswordStrengthResponse:
    strength = password_strength(body.password)
    return PasswordStrengthResponse(
        score=strength.score,
        max_score=MAX_STRENGTH_SCORE,
        label=strength.label,
        acceptable=strength.is_acceptable,
        feedback=strength.feedback,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_current_identity)) -> MeResponse:
    """Return the stored identity and what its role currently grants."""
    return MeResponse(
        user=IdentityResponse.from_identity(identity),
        role_display_name=role_display_name(identity.role),
        tier_display_name=tier_display_name(identity.subscription_tier),
        permissions=[
            PermissionInfo(name=p.value, display_name=permission_display_name(p))
            for p in sorted(permissions_of(identity.role), key=lambda p: p.value)
        ],
    )


@router.get("/auth/access", response_model=AccessResponse)
def access(identity: Identity = Depends(get_current_identity)) -> AccessResponse:
    return AccessResponse(**access_summary(identity.role, identity.subscription_tier))


@router.post("/auth/password", response_model=TokenResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Change the caller's password and return a fresh token pair.

    The previous refresh token is revoked as part of the reissue.
    """
    result = _service(request).change_password(identity.id, body.current_password, body.new_password)
    if isinstance(result, AuthError):
        return _error_response(result)
    logger.info("Password changed for identity %s", identity.id)
    return _no_store(JSONResponse(status_code=200, content=TokenResponse.from_auth(result).model_dump(mode="json")))


# ---------------------------------------------------------------------------
# Account management (MANAGE_USERS)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[IdentityResponse])
def list_users(
    request: Request,
    current: Identity = Depends(require_permission(Permission.MANAGE_USERS)),
) -> list[IdentityResponse]:
    return [IdentityResponse.from_identity(i) for i in _service(request).store.list_identities()]


@router.patch("/auth/users/{identity_id}", response_model=IdentityResponse)
def update_user(
    request: Request,
    identity_id: int,
    body: IdentityPatch,
    current: Identity = Depends(require_permission(Permission.MANAGE_USERS)),
) -> IdentityResponse:
    """Change an identity's role, subscription tier or subscription status.

    The target's outstanding access tokens keep their old claims until they
    expire; protected routes read the stored identity, so gates apply at once.
    """
    if body.role is None and body.subscription_tier is None and body.subscription_status is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if identity_id == current.id and body.role is not None and body.role != Role.ADMIN and current.role == Role.ADMIN:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_demotion", "message": "You cannot remove your own admin role."},
        )

    updated = _service(request).update_access(
        identity_id,
        role=body.role,
        subscription_tier=body.subscription_tier,
        subscription_status=body.subscription_status,
    )
    if updated is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    logger.info("Identity %s updated by %s", identity_id, current.id)
    return IdentityResponse.from_identity(updated)
