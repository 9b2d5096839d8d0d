"""
auth/tokens.py -- JWT issuance, refresh and revocation.

Security design decisions:
  JWT: python-jose with HS256. Two token classes, two secrets:
       access   {sub, role, tier, iat, exp, type="access", jti}  15 min
       refresh  {sub, type="refresh", iat, exp, jti}             7 days
       The type claim plus the distinct signing secret mean one class can
       never be presented as the other. jti makes every token unique, so two
       logins inside the same second still yield different refresh tokens.

  Session reference: only HMAC-SHA256(REFRESH_TOKEN_SECRET, refresh_token)
       is stored, in the identity's refresh_token_hash column. A database
       leak therefore yields nothing that can be replayed. Lookup compares
       with hmac.compare_digest.

  Single active session: issue() overwrites the stored reference, so a new
       login silently invalidates the previous refresh token.

  Rotation: off by default (refresh returns an access token only). With
       Settings.rotate_refresh_tokens the refresh token is replaced on every
       use via a compare-and-swap UPDATE; the previous token stays usable for
       refresh_grace_seconds but only yields an access token.

  Concurrency: issue / refresh / revoke for one identity are serialized by a
       per-identity lock. Different identities never contend.

Per-identity lifecycle: NoSession -> Active -> Refreshing -> Active | Revoked.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import AuthError, AuthErrorCode
from auth.models import AccessClaims, Identity, RefreshResult, Role, SubscriptionTier, TokenPair
from auth.store import IdentityStore
from core.config import Settings, get_settings

logger = logging.getLogger("stagepass.tokens")

_ALGORITHM = "HS256"
ACCESS_TYPE = "access"
REFRESH_TYPE = "refresh"


def _invalid(message: str = "Invalid token.") -> AuthError:
    return AuthError(AuthErrorCode.INVALID_TOKEN, message)


def _expired() -> AuthError:
    return AuthError(AuthErrorCode.EXPIRED, "Token has expired.")


def _revoked() -> AuthError:
    return AuthError(AuthErrorCode.REVOKED, "Session has been revoked.")


class _IdentityLocks:
    """Lock per identity id, held in the map only while some thread uses it.

    Each entry is [lock, users]; users counts holders plus waiters, and the
    entry is dropped when it reaches zero so the map stays bounded by the
    number of identities with a call in progress.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, list] = {}

    @contextmanager
    def __call__(self, identity_id: int) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(identity_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[identity_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class TokenEngine:
    """Mints, refreshes and revokes token pairs for identities in an IdentityStore.

    Usage:
        engine = TokenEngine(store)
        pair = engine.issue(identity)
        result = engine.refresh(pair.refresh_token)
        engine.revoke(identity.id)
    """

    def __init__(self, store: IdentityStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._lock_for = _IdentityLocks()

    # ------------------------------------------------------------------
    # Encode / decode
    # ------------------------------------------------------------------

    def create_access_token(self, identity_id: int, role: Role, tier: SubscriptionTier) -> tuple[str, datetime]:
        """Return (token, expires_at) for a signed access token."""
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.settings.access_token_expire_seconds)
        payload = {
            "sub": str(identity_id),  # jose requires a string subject
            "role": Role(role).value,
            "tier": SubscriptionTier(tier).value,
            "type": ACCESS_TYPE,
            "iat": now,
            "exp": expires_at,
            "jti": secrets.token_hex(16),
        }
        token = jwt.encode(payload, self.settings.access_token_secret, algorithm=_ALGORITHM)
        # JWT exp has whole-second precision; report what the token says.
        return token, expires_at.replace(microsecond=0)

    def create_refresh_token(self, identity_id: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(identity_id),
            "type": REFRESH_TYPE,
            "iat": now,
            "exp": now + timedelta(seconds=self.settings.refresh_token_expire_seconds),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self.settings.refresh_token_secret, algorithm=_ALGORITHM)

    def decode_access_token(self, token: str) -> AccessClaims | AuthError:
        """Verify an access token. Returns its claims or an AuthError (never raises)."""
        payload = self._decode(token, self.settings.access_token_secret, ACCESS_TYPE)
        if isinstance(payload, AuthError):
            return payload
        try:
            return AccessClaims(
                identity_id=int(payload["sub"]),
                role=Role(payload["role"]),
                tier=SubscriptionTier(payload["tier"]),
                issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            )
        except (KeyError, ValueError, TypeError):
            return _invalid()

    def hash_refresh_token(self, token: str) -> str:
        """HMAC-SHA256(REFRESH_TOKEN_SECRET, token) as hex -- the stored reference."""
        return hmac.new(
            self.settings.refresh_token_secret.encode(),
            token.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _decode(self, token: str, secret: str, expected_type: str) -> dict | AuthError:
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            return _expired()
        except JWTError:
            return _invalid()
        if payload.get("type") != expected_type or "sub" not in payload:
            return _invalid()
        return payload

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(self, identity: Identity) -> TokenPair:
        """Mint a token pair and make its refresh token the identity's only session."""
        if identity.id is None:
            raise ValueError("Cannot issue tokens for an identity without an id")
        with self._lock_for(identity.id):
            access_token, access_expires_at = self.create_access_token(
                identity.id, identity.role, identity.subscription_tier
            )
            refresh_token = self.create_refresh_token(identity.id)
            self.store.replace_refresh_token_hash(identity.id, self.hash_refresh_token(refresh_token))
        logger.info("Issued token pair for identity %s", identity.id)
        return TokenPair(access_token=access_token, refresh_token=refresh_token, access_expires_at=access_expires_at)

    def refresh(self, refresh_token: str) -> RefreshResult | AuthError:
        """Exchange a refresh token for a new access token.

        Any failure is terminal for the call: the caller must treat it as the
        end of the session, not retry it.
        """
        payload = self._decode(refresh_token, self.settings.refresh_token_secret, REFRESH_TYPE)
        if isinstance(payload, AuthError):
            logger.info("Refresh rejected: %s", payload.code.value)
            return payload
        try:
            identity_id = int(payload["sub"])
        except (TypeError, ValueError):
            return _invalid()

        presented = self.hash_refresh_token(refresh_token)
        with self._lock_for(identity_id):
            state = self.store.get_refresh_state(identity_id)
            if state is None:
                return _invalid()
            current, previous, rotated_at = state

            if current is not None and hmac.compare_digest(current, presented):
                result = self._refresh_current(identity_id, presented)
            elif self._within_grace(presented, previous, rotated_at):
                result = self._mint_access(identity_id)
            else:
                # Covers logout, a newer login, and an already-rotated token.
                logger.info("Refresh rejected for identity %s: revoked", identity_id)
                return _revoked()

        if not isinstance(result, AuthError):
            self.store.touch_last_active(identity_id)
        return result

    def revoke(self, identity_id: int) -> None:
        """End the identity's session. Access tokens already issued live until exp."""
        with self._lock_for(identity_id):
            self.store.replace_refresh_token_hash(identity_id, None)
        logger.info("Revoked session for identity %s", identity_id)

    def revoke_by_refresh_token(self, refresh_token: str) -> AuthError | None:
        """Logout with a refresh token as proof of identity.

        Expired tokens are still accepted here (the signature proves who sent
        it), but only if the token is still the identity's current one.
        """
        try:
            payload = jwt.decode(
                refresh_token,
                self.settings.refresh_token_secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
            identity_id = int(payload["sub"])
        except (JWTError, KeyError, TypeError, ValueError):
            return _invalid()
        if payload.get("type") != REFRESH_TYPE:
            return _invalid()
        with self._lock_for(identity_id):
            state = self.store.get_refresh_state(identity_id)
            if state is None or state[0] is None:
                return None
            if not hmac.compare_digest(state[0], self.hash_refresh_token(refresh_token)):
                return _revoked()
            self.store.replace_refresh_token_hash(identity_id, None)
        logger.info("Revoked session for identity %s", identity_id)
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh_current(self, identity_id: int, presented: str) -> RefreshResult | AuthError:
        result = self._mint_access(identity_id)
        if isinstance(result, AuthError) or not self.settings.rotate_refresh_tokens:
            return result
        new_refresh = self.create_refresh_token(identity_id)
        if not self.store.swap_refresh_token_hash(identity_id, presented, self.hash_refresh_token(new_refresh)):
            # Another process replaced the session between read and write.
            logger.info("Refresh rotation lost race for identity %s", identity_id)
            return _revoked()
        result.refresh_token = new_refresh
        return result

    def _mint_access(self, identity_id: int) -> RefreshResult | AuthError:
        # Role and tier come from the store, not the old token: a role change
        # takes effect on the next refresh.
        identity = self.store.get_by_id(identity_id)
        if identity is None:
            return _invalid()
        access_token, expires_at = self.create_access_token(identity_id, identity.role, identity.subscription_tier)
        return RefreshResult(access_token=access_token, access_expires_at=expires_at)

    def _within_grace(self, presented: str, previous: str | None, rotated_at: str | None) -> bool:
        if not self.settings.rotate_refresh_tokens or previous is None or rotated_at is None:
            return False
        if not hmac.compare_digest(previous, presented):
            return False
        age = datetime.now(timezone.utc) - datetime.fromisoformat(rotated_at)
        return age.total_seconds() <= self.settings.refresh_grace_seconds
