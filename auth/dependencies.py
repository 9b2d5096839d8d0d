"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and
authorization.

Access tokens arrive as `Authorization: Bearer <token>`. There is no cookie
path: the clients are apps holding a TokenPair, not browsers.

try_get_current_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.
require_permission() builds a dependency that additionally raises HTTP 403
when the resolver says no.

Layer rule: no imports from client/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.models import Identity, Permission
from auth.permissions import has_permission
from auth.service import AuthService


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_identity(request: Request) -> Identity | AuthError | None:
    """Resolve the Bearer token to an Identity.

    Returns None when no token was sent, the AuthError when one was sent but
    failed verification (so the 401 can say "expired" vs "invalid"). Never raises.
    """
    token = bearer_token(request)
    if token is None:
        return None
    service: AuthService = request.app.state.auth_service
    return service.current_identity(token)


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    result = try_get_current_identity(request)
    if isinstance(result, AuthError):
        raise HTTPException(status_code=401, detail=result.to_dict(), headers={"WWW-Authenticate": "Bearer"})
    if result is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": message})


def require_permission(permission: Permission) -> Callable[[Request], Identity]:
    """Dependency factory: 401 if unauthenticated, 403 without `permission`."""

    def dependency(request: Request) -> Identity:
        identity = get_current_identity(request)
        if not has_permission(identity.role, permission):
            raise _forbidden(f"{permission.value} permission required.")
        return identity

    return dependency

