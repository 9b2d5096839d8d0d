"""
auth/credentials.py -- Credential store facade: registration, password
verification and password changes.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds (12 in production). bcrypt.checkpw does the
       constant-time comparison.

  Enumeration: verify() returns the same INVALID_CREDENTIALS value for an
       unknown identifier and for a wrong password, and it always runs one
       bcrypt check -- against a dummy hash when the identifier is unknown --
       so response time does not reveal whether the account exists [C1].

  Hashes: never logged, never returned. The only way in is the plaintext
       password; the only way out is a bool.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import INVALID_CREDENTIALS, AuthError, AuthErrorCode, invalid_input
from auth.models import Identity, Role, SubscriptionStatus, SubscriptionTier
from auth.store import IdentityStore
from auth.validation import normalize_email, validate_password, validate_registration
from core.config import Settings, get_settings

logger = logging.getLogger("stagepass.auth")


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers validate length first (validate_password caps input at 72 bytes,
    bcrypt's hard limit).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a malformed stored hash: never a match.
        return False


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class CredentialVerifier:
    """Owns identity uniqueness and password verification.

    Usage:
        verifier = CredentialVerifier(store)
        result = verifier.register("a@x.com", "ax", "Str0ng!Pass")
        if isinstance(result, AuthError): ...
        result = verifier.verify("ax", "Str0ng!Pass")
    """

    def __init__(self, store: IdentityStore, settings: Settings | None = None) -> None:
        self.store = store
        self.rounds = (settings or get_settings()).bcrypt_rounds
        # Timing equalization dummy hash [C1]. Same cost factor as real
        # hashes so an unknown identifier costs exactly one real check.
        self._dummy_hash = hash_password("stagepass_timing_dummy", self.rounds)

    def register(
        self,
        email: str,
        username: str,
        password: str,
        display_name: str | None = None,
    ) -> Identity | AuthError:
        """Create a FAN / FREE identity. Returns the stored Identity or an AuthError."""
        problem = validate_registration(email, username, password, display_name)
        if problem is not None:
            return problem

        email = normalize_email(email)
        duplicate = self._duplicate(email, username)
        if duplicate is not None:
            return duplicate

        identity = Identity(
            email=email,
            username=username,
            display_name=(display_name or "").strip() or username,
            role=Role.FAN,
            subscription_tier=SubscriptionTier.FREE,
            subscription_status=SubscriptionStatus.ACTIVE,
        )
        try:
            identity_id = self.store.create_identity(identity, hash_password(password, self.rounds))
        except IntegrityError:
            # A concurrent registration claimed the email or username between
            # the pre-check and the insert; report which one.
            duplicate = self._duplicate(email, username)
            if duplicate is None:
                raise
            return duplicate

        logger.info("Registered identity %s (%s)", identity_id, username)
        created = self.store.get_by_id(identity_id)
        if created is None:
            raise RuntimeError(f"Identity {identity_id} not found after insert")
        return created

    def verify(self, identifier: str, password: str) -> Identity | AuthError:
        """Check a password against the identity matching email OR username.

        Always runs bcrypt exactly once. Do NOT add an early return before the
        check -- that re-introduces the timing side channel [C1].
        """
        record = self.store.get_login_record(identifier.strip(), normalize_email(identifier))
        if record is None:
            verify_password(password, self._dummy_hash)
            logger.info("Login rejected: invalid credentials")
            return INVALID_CREDENTIALS
        identity, password_hash = record
        if not verify_password(password, password_hash):
            logger.info("Login rejected: invalid credentials")
            return INVALID_CREDENTIALS
        self.store.touch_last_active(identity.id)
        return self.store.get_by_id(identity.id) or identity

    def change_password(self, identity_id: int, current_password: str, new_password: str) -> Identity | AuthError:
        """Replace the password after re-verifying the current one."""
        password_hash = self.store.get_password_hash(identity_id)
        if password_hash is None or not verify_password(current_password, password_hash):
            return INVALID_CREDENTIALS
        problem = validate_password(new_password)
        if problem is not None:
            return problem
        if verify_password(new_password, password_hash):
            return invalid_input("new_password", "New password must differ from the current password.")
        self.store.update_identity(identity_id, password_hash=hash_password(new_password, self.rounds))
        logger.info("Password changed for identity %s", identity_id)
        identity = self.store.get_by_id(identity_id)
        if identity is None:
            return INVALID_CREDENTIALS
        return identity

    def _duplicate(self, email: str, username: str) -> AuthError | None:
        if self.store.email_exists(email):
            return AuthError(AuthErrorCode.DUPLICATE_EMAIL, "An account with this email already exists.", field="email")
        if self.store.username_exists(username):
            return AuthError(
                AuthErrorCode.DUPLICATE_USERNAME, "An account with this username already exists.", field="username"
            )
        return None
