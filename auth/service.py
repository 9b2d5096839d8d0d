"""
auth/service.py -- Server-side auth facade composing the credential store and
the token engine.

AuthService is what the API routes call, and it is also the object the
in-process client backend (client/backends.py LocalAuthBackend) wraps. All
expected failures come back as AuthError values.
"""

from __future__ import annotations

import logging

from auth.credentials import CredentialVerifier
from auth.errors import AuthError, AuthErrorCode
from auth.models import AuthResponse, Identity, RefreshResult, Role, SubscriptionStatus, SubscriptionTier
from auth.store import IdentityStore
from auth.tokens import TokenEngine
from core.config import Settings, get_settings

logger = logging.getLogger("stagepass.auth")


class AuthService:
    """register / login / refresh / logout over one IdentityStore.

    Usage:
        service = AuthService(IdentityStore(settings.database_url))
        result = service.login("ax", "Str0ng!Pass")
        if isinstance(result, AuthError): ...
    """

    def __init__(self, store: IdentityStore, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.credentials = CredentialVerifier(store, self.settings)
        self.tokens = TokenEngine(store, self.settings)

    def register(
        self, email: str, username: str, password: str, display_name: str | None = None
    ) -> AuthResponse | AuthError:
        identity = self.credentials.register(email, username, password, display_name)
        if isinstance(identity, AuthError):
            return identity
        return AuthResponse(identity=identity, tokens=self.tokens.issue(identity))

    def login(self, identifier: str, password: str) -> AuthResponse | AuthError:
        identity = self.credentials.verify(identifier, password)
        if isinstance(identity, AuthError):
            return identity
        return AuthResponse(identity=identity, tokens=self.tokens.issue(identity))

    def refresh(self, refresh_token: str) -> RefreshResult | AuthError:
        return self.tokens.refresh(refresh_token)

    def logout(self, identity_id: int) -> None:
        self.tokens.revoke(identity_id)

    def logout_with_refresh_token(self, refresh_token: str) -> AuthError | None:
        return self.tokens.revoke_by_refresh_token(refresh_token)

    def current_identity(self, access_token: str) -> Identity | AuthError:
        """Resolve a verified access token to the stored identity."""
        claims = self.tokens.decode_access_token(access_token)
        if isinstance(claims, AuthError):
            return claims
        identity = self.store.get_by_id(claims.identity_id)
        if identity is None:
            return AuthError(AuthErrorCode.INVALID_TOKEN, "Invalid token.")
        return identity

    def change_password(self, identity_id: int, current_password: str, new_password: str) -> AuthResponse | AuthError:
        """Change the password and start a fresh session.

        The new token pair replaces the stored refresh reference, so any other
        holder of the old refresh token is logged out.
        """
        identity = self.credentials.change_password(identity_id, current_password, new_password)
        if isinstance(identity, AuthError):
            return identity
        return AuthResponse(identity=identity, tokens=self.tokens.issue(identity))

    def update_access(
        self,
        identity_id: int,
        role: Role | None = None,
        subscription_tier: SubscriptionTier | None = None,
        subscription_status: SubscriptionStatus | None = None,
    ) -> Identity | None:
        """Change role / tier / status. Returns the updated identity or None if unknown.

        Outstanding access tokens keep their old claims until they expire; the
        next refresh picks up the new values.
        """
        fields: dict = {}
        if role is not None:
            fields["role"] = Role(role)
        if subscription_tier is not None:
            fields["subscription_tier"] = SubscriptionTier(subscription_tier)
        if subscription_status is not None:
            fields["subscription_status"] = SubscriptionStatus(subscription_status)
        if fields and not self.store.update_identity(identity_id, **fields):
            return None
        if fields:
            logger.info("Updated access for identity %s: %s", identity_id, sorted(fields))
        return self.store.get_by_id(identity_id)
