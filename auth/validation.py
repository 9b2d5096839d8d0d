"""
auth/validation.py -- Registration input rules and password strength scoring.

The rules mirror what the client forms show:
  email     -- something@something.tld, no whitespace
  username  -- 3-20 chars of letters, digits, underscore
  password  -- at least 8 chars with lowercase, uppercase, digit and one of
               the symbols @$!%*?&

password_strength() scores each of the five criteria separately (0..5) and
returns per-criterion feedback so a UI can render a strength meter while the
user types. validate_password() is the hard gate: all five must pass.

Passwords longer than 72 UTF-8 bytes are rejected because bcrypt only looks
at the first 72 bytes (and bcrypt >= 5 refuses longer input outright).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from auth.errors import AuthError, invalid_input

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_BYTES = 72
PASSWORD_SYMBOLS = "@$!%*?&"
DISPLAY_NAME_MAX_LENGTH = 50

_LOWER_RE = re.compile(r"[a-z]")
_UPPER_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"\d")
_SYMBOL_RE = re.compile(f"[{re.escape(PASSWORD_SYMBOLS)}]")

# Score at which the strength meter reads "strong" -- every criterion met.
MAX_STRENGTH_SCORE = 5


@dataclass
class PasswordStrength:
    score: int
    feedback: list[str] = field(default_factory=list)

    @property
    def is_acceptable(self) -> bool:
        return self.score == MAX_STRENGTH_SCORE

    @property
    def label(self) -> str:
        if self.score <= 2:
            return "weak"
        if self.score <= 4:
            return "fair"
        return "strong"


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and compare them lowercased."""
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email.strip()))


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username))


def password_strength(password: str) -> PasswordStrength:
    """Score a password 0..5, one point per satisfied criterion."""
    checks = (
        (len(password) >= PASSWORD_MIN_LENGTH, f"Password should be at least {PASSWORD_MIN_LENGTH} characters long"),
        (bool(_LOWER_RE.search(password)), "Add lowercase letters"),
        (bool(_UPPER_RE.search(password)), "Add uppercase letters"),
        (bool(_DIGIT_RE.search(password)), "Add numbers"),
        (bool(_SYMBOL_RE.search(password)), f"Add special characters ({PASSWORD_SYMBOLS})"),
    )
    result = PasswordStrength(score=0)
    for passed, hint in checks:
        if passed:
            result.score += 1
        else:
            result.feedback.append(hint)
    return result


def validate_password(password: str) -> AuthError | None:
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        return invalid_input("password", f"Password must be at most {PASSWORD_MAX_BYTES} bytes.")
    strength = password_strength(password)
    if not strength.is_acceptable:
        return invalid_input(
            "password",
            "Password must be at least 8 characters with uppercase, lowercase, number, and special character. "
            + "; ".join(strength.feedback),
        )
    return None


def validate_registration(
    email: str, username: str, password: str, display_name: str | None = None
) -> AuthError | None:
    """Return the first field-level problem with a registration, or None."""
    if not email or not is_valid_email(email):
        return invalid_input("email", "Please enter a valid email address.")
    if not username or not is_valid_username(username):
        return invalid_input(
            "username", "Username must be 3-20 characters with letters, numbers, and underscores only."
        )
    if display_name is not None and len(display_name.strip()) > DISPLAY_NAME_MAX_LENGTH:
        return invalid_input("display_name", f"Display name must be at most {DISPLAY_NAME_MAX_LENGTH} characters.")
    return validate_password(password or "")
