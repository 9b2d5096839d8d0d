"""
auth/models.py -- Domain enums and dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond ordering and
serialization helpers). Stores, engines and routes do the work.

Role and SubscriptionTier are ordered enums: the declaration order IS the
rank. Every hierarchical check reduces to comparing those integer ranks, see
auth/permissions.py.

Identity deliberately has no password hash field. The hash lives only inside
auth/store.py and auth/credentials.py; nothing that holds an Identity can leak
it into a log line or a response body.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    """Coarse identity classification. Declaration order is the total order."""

    GUEST = "GUEST"
    FAN = "FAN"
    PREMIUM_FAN = "PREMIUM_FAN"
    VIP_FAN = "VIP_FAN"
    MODERATOR = "MODERATOR"
    BAND_MEMBER = "BAND_MEMBER"
    ADMIN = "ADMIN"


class SubscriptionTier(str, Enum):
    """Paid-access classification. Independent axis from Role."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"
    VIP = "VIP"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PAUSED = "PAUSED"


class Permission(str, Enum):
    # Content
    READ_POSTS = "READ_POSTS"
    CREATE_POSTS = "CREATE_POSTS"
    EDIT_POSTS = "EDIT_POSTS"
    DELETE_POSTS = "DELETE_POSTS"

    # Comments
    READ_COMMENTS = "READ_COMMENTS"
    CREATE_COMMENTS = "CREATE_COMMENTS"
    EDIT_COMMENTS = "EDIT_COMMENTS"
    DELETE_COMMENTS = "DELETE_COMMENTS"

    # Forum
    READ_FORUM = "READ_FORUM"
    CREATE_FORUM_POSTS = "CREATE_FORUM_POSTS"
    MODERATE_FORUM = "MODERATE_FORUM"

    # Chat
    READ_CHAT = "READ_CHAT"
    SEND_MESSAGES = "SEND_MESSAGES"
    CREATE_CHAT_ROOMS = "CREATE_CHAT_ROOMS"
    MODERATE_CHAT = "MODERATE_CHAT"

    # Paid content
    ACCESS_PREMIUM_CONTENT = "ACCESS_PREMIUM_CONTENT"
    ACCESS_VIP_CONTENT = "ACCESS_VIP_CONTENT"

    # Administrative
    MANAGE_USERS = "MANAGE_USERS"
    MANAGE_CONTENT = "MANAGE_CONTENT"
    VIEW_ANALYTICS = "VIEW_ANALYTICS"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"


@dataclass
class Identity:
    """A registered account as seen by everything outside the credential store.

    id is None only for an Identity that has not been inserted yet.
    last_active_at is stamped on every successful register / verify / refresh.
    """

    email: str
    username: str
    display_name: str
    role: Role = Role.FAN
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    is_verified: bool = False
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_active_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "display_name": self.display_name,
            "role": self.role.value,
            "subscription_tier": self.subscription_tier.value,
            "subscription_status": self.subscription_status.value,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_active_at": self.last_active_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Identity:
        return cls(
            id=data.get("id"),
            email=data["email"],
            username=data["username"],
            display_name=data.get("display_name") or data["username"],
            role=Role(data.get("role", Role.FAN.value)),
            subscription_tier=SubscriptionTier(data.get("subscription_tier", SubscriptionTier.FREE.value)),
            subscription_status=SubscriptionStatus(data.get("subscription_status", SubscriptionStatus.ACTIVE.value)),
            is_verified=bool(data.get("is_verified", False)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            last_active_at=data.get("last_active_at"),
        )


@dataclass
class TokenPair:
    """Access + refresh token as handed to a client.

    access_expires_at is timezone-aware UTC. The refresh token's own expiry is
    inside its signed claims; clients never need it to schedule renewal.
    """

    access_token: str
    refresh_token: str
    access_expires_at: datetime

    @property
    def expires_in(self) -> int:
        """Seconds until the access token expires (never negative)."""
        remaining = (self.access_expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, int(remaining))

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "access_expires_at": self.access_expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> TokenPair:
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            access_expires_at=datetime.fromisoformat(data["access_expires_at"]),
        )


@dataclass
class AuthResponse:
    """Result of a successful register or login: who, plus their tokens."""

    identity: Identity
    tokens: TokenPair


@dataclass
class RefreshResult:
    """Result of a successful refresh.

    refresh_token is None unless rotation is enabled and produced a new one;
    clients keep their current refresh token in that case.
    """

    access_token: str
    access_expires_at: datetime
    refresh_token: str | None = None


@dataclass
class AccessClaims:
    """Verified claims of an access token."""

    identity_id: int
    role: Role
    tier: SubscriptionTier
    issued_at: datetime
    expires_at: datetime


@dataclass
class Session:
    """Client-side session. Replaced as a whole, never field by field."""

    identity: Identity
    tokens: TokenPair
    is_authenticated: bool = True

    def to_dict(self) -> dict:
        return {
            "identity": self.identity.to_dict(),
            "tokens": self.tokens.to_dict(),
            "is_authenticated": self.is_authenticated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Session:
        return cls(
            identity=Identity.from_dict(data["identity"]),
            tokens=TokenPair.from_dict(data["tokens"]),
            is_authenticated=bool(data.get("is_authenticated", True)),
        )
