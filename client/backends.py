"""
client/backends.py -- The AuthBackend protocol and its two implementations.

SessionManager depends only on AuthBackend, so where the credential store and
token engine actually live is invisible to session logic:

  LocalAuthBackend -- wraps an in-process auth.service.AuthService.
  HttpAuthBackend  -- talks to the REST API (api/routes/v1/auth.py) with
                      requests. Error envelopes are mapped back onto the same
                      AuthError values the service returns. Transport
                      failures and unreadable bodies become
                      AuthErrorCode.TIMEOUT so callers can tell "rejected"
                      from "unreachable".
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import requests
from pydantic import TypeAdapter

from auth.errors import AuthError, AuthErrorCode
from auth.models import AuthResponse, Identity, RefreshResult, TokenPair

if TYPE_CHECKING:
    from auth.service import AuthService

logger = logging.getLogger("stagepass.backend")


class AuthBackend(Protocol):
    def register(
        self, email: str, username: str, password: str, display_name: str | None = None
    ) -> AuthResponse | AuthError: ...

    def login(self, identifier: str, password: str) -> AuthResponse | AuthError: ...

    def refresh(self, refresh_token: str) -> RefreshResult | AuthError: ...

    def revoke(self, tokens: TokenPair) -> AuthError | None: ...


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------


class LocalAuthBackend:
    """AuthBackend over an AuthService in the same process."""

    def __init__(self, service: AuthService) -> None:
        self.service = service

    def register(
        self, email: str, username: str, password: str, display_name: str | None = None
    ) -> AuthResponse | AuthError:
        return self.service.register(email, username, password, display_name)

    def login(self, identifier: str, password: str) -> AuthResponse | AuthError:
        return self.service.login(identifier, password)

    def refresh(self, refresh_token: str) -> RefreshResult | AuthError:
        return self.service.refresh(refresh_token)

    def revoke(self, tokens: TokenPair) -> AuthError | None:
        return self.service.logout_with_refresh_token(tokens.refresh_token)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

# API envelope codes that are not AuthErrorCode values.
_FOREIGN_CODES = {
    "validation_error": AuthErrorCode.INVALID_INPUT,
    "forbidden": AuthErrorCode.UNAUTHORIZED,
    "rate_limited": AuthErrorCode.TIMEOUT,
    "registration_disabled": AuthErrorCode.UNAUTHORIZED,
}

# The API writes UTC timestamps with a "Z" suffix, which datetime.fromisoformat
# only accepts from Python 3.11 on.
_TIMESTAMP = TypeAdapter(datetime)


def _retry_after(resp: requests.Response) -> float | None:
    if resp.status_code != 429:
        return None
    try:
        return max(0.0, float(resp.headers.get("Retry-After", "")))
    except ValueError:
        return None


def error_from_response(resp: requests.Response) -> AuthError:
    """Map an API error response onto an AuthError."""
    if resp.status_code >= 500:
        return AuthError(AuthErrorCode.TIMEOUT, f"Server unavailable (HTTP {resp.status_code}).")
    try:
        body = resp.json().get("error", {})
    except (ValueError, AttributeError):
        body = {}
    if not isinstance(body, dict):
        body = {}
    raw_code = body.get("code", "")
    try:
        code = AuthErrorCode(raw_code)
    except ValueError:
        code = _FOREIGN_CODES.get(raw_code, AuthErrorCode.UNAUTHORIZED)
    return AuthError(
        code,
        body.get("message") or f"HTTP {resp.status_code}",
        field=body.get("field"),
        retry_after=_retry_after(resp),
    )


def _unreadable(path: str, exc: Exception) -> AuthError:
    logger.warning("Unreadable response from %s: %s", path, exc)
    return AuthError(AuthErrorCode.TIMEOUT, "The server sent a response that could not be read.")


def _tokens_from(data: dict) -> TokenPair:
    return TokenPair(
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        access_expires_at=_TIMESTAMP.validate_python(data["access_expires_at"]),
    )


class HttpAuthBackend:
    """AuthBackend over the StagePass REST API.

    Usage:
        backend = HttpAuthBackend("http://localhost:8000/api/v1", timeout=10)
        result = backend.login("ax", "Str0ng!Pass")
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        # The API never redirects; refuse to follow a chain somewhere else.
        self._session.max_redirects = 3

    def _post(self, path: str, payload: dict, access_token: str | None = None) -> requests.Response | AuthError:
        return self.request("POST", path, access_token, json=payload)

    def request(
        self, method: str, path: str, access_token: str | None = None, **kwargs: Any
    ) -> requests.Response | AuthError:
        """Send a request; returns the Response (any status) or a TIMEOUT AuthError."""
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            return self._session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.Timeout:
            logger.warning("%s %s timed out after %.1fs", method, path, self.timeout)
            return AuthError(AuthErrorCode.TIMEOUT, "The server did not respond in time.")
        except requests.ConnectionError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            return AuthError(AuthErrorCode.TIMEOUT, "The server could not be reached.")
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, path, e)
            return AuthError(AuthErrorCode.TIMEOUT, "The request to the server failed.")

    def _auth_response(
        self, path: str, resp: requests.Response | AuthError, expected_status: int
    ) -> AuthResponse | AuthError:
        if isinstance(resp, AuthError):
            return resp
        if resp.status_code != expected_status:
            return error_from_response(resp)
        try:
            data = resp.json()
            return AuthResponse(identity=Identity.from_dict(data["user"]), tokens=_tokens_from(data))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return _unreadable(path, e)

    def register(
        self, email: str, username: str, password: str, display_name: str | None = None
    ) -> AuthResponse | AuthError:
        payload = {"email": email, "username": username, "password": password}
        if display_name is not None:
            payload["display_name"] = display_name
        return self._auth_response("/auth/register", self._post("/auth/register", payload), 201)

    def login(self, identifier: str, password: str) -> AuthResponse | AuthError:
        payload = {"identifier": identifier, "password": password}
        return self._auth_response("/auth/login", self._post("/auth/login", payload), 200)

    def refresh(self, refresh_token: str) -> RefreshResult | AuthError:
        resp = self._post("/auth/refresh", {"refresh_token": refresh_token})
        if isinstance(resp, AuthError):
            return resp
        if resp.status_code != 200:
            return error_from_response(resp)
        try:
            data = resp.json()
            return RefreshResult(
                access_token=data["access_token"],
                access_expires_at=_TIMESTAMP.validate_python(data["access_expires_at"]),
                refresh_token=data.get("refresh_token"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return _unreadable("/auth/refresh", e)

    def revoke(self, tokens: TokenPair) -> AuthError | None:
        resp = self._post("/auth/logout", {"refresh_token": tokens.refresh_token})
        if isinstance(resp, AuthError):
            return resp
        if resp.status_code != 200:
            return error_from_response(resp)
        return None

    def close(self) -> None:
        self._session.close()
