"""
auth/errors.py -- Typed failure values for the auth core.

Expected failures (bad password, expired token, duplicate email) are not
exceptions here. Operations return either their success value or an
AuthError, and callers branch with isinstance(). Only programming errors and
infrastructure faults (database down, corrupt config) raise.

The code values double as the "code" field of the API error envelope, so the
HTTP client backend can map a response straight back to the same AuthError.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_CREDENTIALS = "invalid_credentials"
    DUPLICATE_EMAIL = "duplicate_email"
    DUPLICATE_USERNAME = "duplicate_username"
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    REVOKED = "revoked"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"


# Token lifecycle failures end the session; they are never retried.
TERMINAL_TOKEN_ERRORS = frozenset({AuthErrorCode.INVALID_TOKEN, AuthErrorCode.EXPIRED, AuthErrorCode.REVOKED})

# HTTP status used by the API layer for each code.
HTTP_STATUS = {
    AuthErrorCode.INVALID_INPUT: 400,
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.DUPLICATE_EMAIL: 409,
    AuthErrorCode.DUPLICATE_USERNAME: 409,
    AuthErrorCode.INVALID_TOKEN: 401,
    AuthErrorCode.EXPIRED: 401,
    AuthErrorCode.REVOKED: 401,
    AuthErrorCode.TIMEOUT: 503,
    AuthErrorCode.UNAUTHORIZED: 401,
}


@dataclass(frozen=True)
class AuthError:
    """A failed auth operation.

    field names the offending input for INVALID_INPUT ("email", "username",
    "password", ...) so a form can highlight it; None otherwise.

    retry_after is the server's Retry-After hint in seconds when a TIMEOUT
    came from rate limiting; None otherwise.
    """

    code: AuthErrorCode
    message: str
    field: str | None = None
    retry_after: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.code in TERMINAL_TOKEN_ERRORS

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.code]

    def to_dict(self) -> dict:
        body = {"code": self.code.value, "message": self.message}
        if self.field is not None:
            body["field"] = self.field
        return body


def invalid_input(field: str, message: str) -> AuthError:
    return AuthError(AuthErrorCode.INVALID_INPUT, message, field=field)


# Single shared value: wrong password and unknown identifier must be
# indistinguishable to the caller.
INVALID_CREDENTIALS = AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email/username or password.")
