"""
tests/test_validation.py -- Unit tests for auth/validation.py.

Covers:
  - Email and username grammar
  - Password strength scoring: one point per criterion, with feedback
  - validate_registration() reports the first offending field
"""

from __future__ import annotations

import pytest

from auth.errors import AuthErrorCode
from auth.validation import (
    is_valid_email,
    is_valid_username,
    normalize_email,
    password_strength,
    validate_password,
    validate_registration,
)


@pytest.mark.parametrize("email", ["a@x.com", "first.last+tag@sub.example.org", " A@X.COM "])
def test_valid_emails(email: str) -> None:
    assert is_valid_email(email)


@pytest.mark.parametrize("email", ["", "ax", "a@x", "a b@x.com", "@x.com", "a@@x.com"])
def test_invalid_emails(email: str) -> None:
    assert not is_valid_email(email)


def test_normalize_email() -> None:
    assert normalize_email("  Ax@Example.COM ") == "ax@example.com"


@pytest.mark.parametrize("username", ["ax_", "abc", "A1_b2", "a" * 20])
def test_valid_usernames(username: str) -> None:
    assert is_valid_username(username)


@pytest.mark.parametrize("username", ["ab", "a" * 21, "with space", "dash-name", "dot.name", ""])
def test_invalid_usernames(username: str) -> None:
    assert not is_valid_username(username)


class TestPasswordStrength:
    def test_strong(self) -> None:
        strength = password_strength("Str0ng!Pass")
        assert strength.score == 5
        assert strength.feedback == []
        assert strength.label == "strong"
        assert strength.is_acceptable

    def test_empty(self) -> None:
        strength = password_strength("")
        assert strength.score == 0
        assert len(strength.feedback) == 5
        assert strength.label == "weak"

    def test_missing_symbol(self) -> None:
        strength = password_strength("Str0ngPass")
        assert strength.score == 4
        assert strength.label == "fair"
        assert not strength.is_acceptable
        assert strength.feedback == ["Add special characters (@$!%*?&)"]

    def test_short_but_varied(self) -> None:
        strength = password_strength("Aa1!")
        assert strength.score == 4
        assert "at least 8 characters" in strength.feedback[0]

    def test_symbol_outside_allowed_set_does_not_count(self) -> None:
        assert password_strength("Str0ng#Pass").score == 4


class TestValidatePassword:
    def test_accepts_policy_password(self) -> None:
        assert validate_password("Str0ng!Pass") is None

    def test_rejects_weak_with_field(self) -> None:
        error = validate_password("password")
        assert error is not None
        assert error.code == AuthErrorCode.INVALID_INPUT
        assert error.field == "password"

    def test_rejects_over_72_bytes(self) -> None:
        error = validate_password("Aa1!" + "x" * 69)
        assert error is not None
        assert "72" in error.message


class TestValidateRegistration:
    def test_ok(self) -> None:
        assert validate_registration("a@x.com", "ax_", "Str0ng!Pass") is None

    @pytest.mark.parametrize(
        "email,username,password,display_name,field",
        [
            ("bad", "ax_", "Str0ng!Pass", None, "email"),
            ("a@x.com", "a!", "Str0ng!Pass", None, "username"),
            ("a@x.com", "ax_", "weak", None, "password"),
            ("a@x.com", "ax_", "Str0ng!Pass", "n" * 51, "display_name"),
        ],
    )
    def test_reports_field(self, email, username, password, display_name, field) -> None:
        error = validate_registration(email, username, password, display_name)
        assert error is not None
        assert error.code == AuthErrorCode.INVALID_INPUT
        assert error.field == field

    def test_email_checked_before_password(self) -> None:
        error = validate_registration("bad", "ax_", "weak")
        assert error.field == "email"
