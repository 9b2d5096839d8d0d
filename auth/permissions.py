"""
auth/permissions.py -- Role / subscription-tier permission resolver.

Pure, side-effect-free functions. Nothing here touches storage or tokens;
callers pass the role and tier they already trust (from a verified access
token or a Session snapshot).

Two independent axes:
  Role              GUEST < FAN < PREMIUM_FAN < VIP_FAN < MODERATOR < BAND_MEMBER < ADMIN
  SubscriptionTier  FREE < PREMIUM < VIP

Paid content is OR-gated: a sufficient role OR a sufficient tier unlocks it.
Every gate that protects paid content must check both axes.

ROLE_PERMISSIONS is built cumulatively -- each role starts from the full set
of the role below it -- so the superset property (lower role's permissions are
a subset of every higher role's) holds by construction, and
_assert_monotonic() re-checks it at import time.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import Permission, Role, Session, SubscriptionTier

# ---------------------------------------------------------------------------
# Ranks
# ---------------------------------------------------------------------------

ROLE_ORDER: tuple[Role, ...] = tuple(Role)
TIER_ORDER: tuple[SubscriptionTier, ...] = tuple(SubscriptionTier)

_ROLE_RANK: dict[Role, int] = {role: i for i, role in enumerate(ROLE_ORDER)}
_TIER_RANK: dict[SubscriptionTier, int] = {tier: i for i, tier in enumerate(TIER_ORDER)}


def role_rank(role: Role) -> int:
    return _ROLE_RANK[Role(role)]


def tier_rank(tier: SubscriptionTier) -> int:
    return _TIER_RANK[SubscriptionTier(tier)]


def has_role(actual: Role, required: Role) -> bool:
    """True if `actual` is at or above `required` in the role hierarchy."""
    return role_rank(actual) >= role_rank(required)


def has_subscription_tier(actual: SubscriptionTier, required: SubscriptionTier) -> bool:
    return tier_rank(actual) >= tier_rank(required)


# ---------------------------------------------------------------------------
# Role -> permission map
# ---------------------------------------------------------------------------

# Permissions each role adds on top of the role directly below it.
_ROLE_GRANTS: dict[Role, frozenset[Permission]] = {
    Role.GUEST: frozenset({Permission.READ_POSTS, Permission.READ_COMMENTS, Permission.READ_FORUM}),
    Role.FAN: frozenset(
        {
            Permission.CREATE_COMMENTS,
            Permission.EDIT_COMMENTS,
            Permission.CREATE_FORUM_POSTS,
            Permission.READ_CHAT,
            Permission.SEND_MESSAGES,
        }
    ),
    Role.PREMIUM_FAN: frozenset({Permission.ACCESS_PREMIUM_CONTENT}),
    Role.VIP_FAN: frozenset({Permission.CREATE_CHAT_ROOMS, Permission.ACCESS_VIP_CONTENT}),
    Role.MODERATOR: frozenset(
        {
            Permission.DELETE_COMMENTS,
            Permission.MODERATE_FORUM,
            Permission.MODERATE_CHAT,
            Permission.MANAGE_CONTENT,
        }
    ),
    Role.BAND_MEMBER: frozenset({Permission.CREATE_POSTS, Permission.EDIT_POSTS, Permission.VIEW_ANALYTICS}),
    Role.ADMIN: frozenset({Permission.DELETE_POSTS, Permission.MANAGE_USERS, Permission.SYSTEM_ADMIN}),
}


def _build_role_permissions() -> dict[Role, frozenset[Permission]]:
    table: dict[Role, frozenset[Permission]] = {}
    inherited: frozenset[Permission] = frozenset()
    for role in ROLE_ORDER:
        inherited = inherited | _ROLE_GRANTS[role]
        table[role] = inherited
    return table


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = _build_role_permissions()


def _assert_monotonic() -> None:
    for lower, higher in zip(ROLE_ORDER, ROLE_ORDER[1:]):
        missing = ROLE_PERMISSIONS[lower] - ROLE_PERMISSIONS[higher]
        if missing:
            raise RuntimeError(f"{higher.value} is missing permissions granted to {lower.value}: {sorted(missing)}")


_assert_monotonic()


def permissions_of(role: Role) -> frozenset[Permission]:
    return ROLE_PERMISSIONS[Role(role)]


def has_permission(role: Role, permission: Permission) -> bool:
    return Permission(permission) in permissions_of(role)


def has_any_permission(role: Role, permissions: Iterable[Permission]) -> bool:
    return any(has_permission(role, p) for p in permissions)


def has_all_permissions(role: Role, permissions: Iterable[Permission]) -> bool:
    return all(has_permission(role, p) for p in permissions)


# ---------------------------------------------------------------------------
# Composite gates
# ---------------------------------------------------------------------------


def can_access_premium_content(role: Role, tier: SubscriptionTier) -> bool:
    return has_role(role, Role.PREMIUM_FAN) or has_subscription_tier(tier, SubscriptionTier.PREMIUM)


def can_access_vip_content(role: Role, tier: SubscriptionTier) -> bool:
    return has_role(role, Role.VIP_FAN) or has_subscription_tier(tier, SubscriptionTier.VIP)


def can_moderate(role: Role) -> bool:
    return has_any_permission(role, (Permission.MODERATE_FORUM, Permission.MODERATE_CHAT))


def is_admin(role: Role) -> bool:
    return has_permission(role, Permission.SYSTEM_ADMIN)


def can_manage_users(role: Role) -> bool:
    return has_permission(role, Permission.MANAGE_USERS)


def can_view_analytics(role: Role) -> bool:
    return has_permission(role, Permission.VIEW_ANALYTICS)


def access_summary(role: Role, tier: SubscriptionTier) -> dict[str, bool]:
    """All composite gates at once -- what a client needs to render menus."""
    return {
        "premium_content": can_access_premium_content(role, tier),
        "vip_content": can_access_vip_content(role, tier),
        "moderate": can_moderate(role),
        "manage_users": can_manage_users(role),
        "view_analytics": can_view_analytics(role),
        "admin": is_admin(role),
    }


# ---------------------------------------------------------------------------
# Session-level entry points
#
# An unauthenticated (or missing) session resolves as GUEST / FREE.
# ---------------------------------------------------------------------------


def _session_axes(session: Session | None) -> tuple[Role, SubscriptionTier]:
    if session is None or not session.is_authenticated:
        return Role.GUEST, SubscriptionTier.FREE
    return session.identity.role, session.identity.subscription_tier


def current_permissions(session: Session | None) -> frozenset[Permission]:
    role, _tier = _session_axes(session)
    return permissions_of(role)


def require_role(session: Session | None, threshold: Role) -> bool:
    role, _tier = _session_axes(session)
    return has_role(role, threshold)


def require_tier(session: Session | None, threshold: SubscriptionTier) -> bool:
    _role, tier = _session_axes(session)
    return has_subscription_tier(tier, threshold)


# ---------------------------------------------------------------------------
# Display names
# ---------------------------------------------------------------------------

_ROLE_DISPLAY = {
    Role.GUEST: "Guest",
    Role.FAN: "Fan",
    Role.PREMIUM_FAN: "Premium Fan",
    Role.VIP_FAN: "VIP Fan",
    Role.MODERATOR: "Moderator",
    Role.BAND_MEMBER: "Band Member",
    Role.ADMIN: "Admin",
}

_TIER_DISPLAY = {
    SubscriptionTier.FREE: "Free",
    SubscriptionTier.PREMIUM: "Premium",
    SubscriptionTier.VIP: "VIP",
}

# Acronyms keep their casing in display names.
_DISPLAY_WORDS = {"VIP": "VIP"}


def role_display_name(role: Role) -> str:
    return _ROLE_DISPLAY.get(role, "Unknown")


def tier_display_name(tier: SubscriptionTier) -> str:
    return _TIER_DISPLAY.get(tier, "Unknown")


def permission_display_name(permission: Permission) -> str:
    """READ_POSTS -> "Read Posts", ACCESS_VIP_CONTENT -> "Access VIP Content"."""
    return " ".join(_DISPLAY_WORDS.get(word, word.capitalize()) for word in Permission(permission).value.split("_"))
