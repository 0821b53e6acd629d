"""
Roles and permissions.

This defines WHAT each role may do, not HOW we check it.
The actual checking happens in permissions.py.

The role table is versioned together with feature rollout: bump
ROLE_TABLE_VERSION whenever a role gains or loses a permission.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

ROLE_TABLE_VERSION = 3


class InvalidRoleError(Exception):
    """A stored or claimed role is outside the allow-list."""
    pass


class Role(str, Enum):
    """The fixed allow-list of role names."""

    USER = "user"                      # Account owner, full control of own data
    SUB_ACCOUNT = "sub_account"        # Child profile under a parent account
    USER_MANAGER = "user_manager"      # Agency account that manages other users
    COMPANY_OWNER = "company_owner"
    COMPANY_ADMIN = "company_admin"
    COMPANY_MEMBER = "company_member"
    EDITOR = "editor"                  # Delegated content editing
    VIEWER = "viewer"                  # Delegated read-only access
    ADMIN = "admin"                    # Platform operator


class Permission(str, Enum):
    """
    Fine-grained permissions.

    These are the strings checked against the endpoint table.
    """

    # Profile page
    PROFILE_READ = "read:profile"
    PROFILE_WRITE = "write:profile"

    # Links
    LINKS_READ = "read:links"
    LINKS_WRITE = "write:links"

    # Pages and appearance
    PAGES_READ = "read:pages"
    PAGES_WRITE = "write:pages"
    APPEARANCE_READ = "read:appearance"
    APPEARANCE_WRITE = "write:appearance"

    # Analytics
    ANALYTICS_READ = "read:analytics"

    # Account administration (never delegated)
    APIKEYS_MANAGE = "manage:apikeys"
    BILLING_MANAGE = "manage:billing"
    USERS_MANAGE = "manage:users"
    COMPANY_MANAGE = "manage:company"
    PLATFORM_ADMIN = "admin:platform"


# =============================================================================
# Permission Mappings
# =============================================================================


_CONTENT_READ = {
    Permission.PROFILE_READ,
    Permission.LINKS_READ,
    Permission.PAGES_READ,
    Permission.APPEARANCE_READ,
    Permission.ANALYTICS_READ,
}

_CONTENT_WRITE = {
    Permission.PROFILE_WRITE,
    Permission.LINKS_WRITE,
    Permission.PAGES_WRITE,
    Permission.APPEARANCE_WRITE,
}

_ACCOUNT = {
    Permission.APIKEYS_MANAGE,
    Permission.BILLING_MANAGE,
}


# What each role grants on its own account
ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = {
    Role.USER: frozenset(_CONTENT_READ | _CONTENT_WRITE | _ACCOUNT),
    Role.SUB_ACCOUNT: frozenset(_CONTENT_READ | _CONTENT_WRITE),
    Role.USER_MANAGER: frozenset(_CONTENT_READ | _CONTENT_WRITE | _ACCOUNT | {Permission.USERS_MANAGE}),
    Role.COMPANY_OWNER: frozenset(
        _CONTENT_READ | _CONTENT_WRITE | _ACCOUNT | {Permission.USERS_MANAGE, Permission.COMPANY_MANAGE}
    ),
    Role.COMPANY_ADMIN: frozenset(_CONTENT_READ | _CONTENT_WRITE | {Permission.COMPANY_MANAGE}),
    Role.COMPANY_MEMBER: frozenset(_CONTENT_READ | {Permission.LINKS_WRITE}),
    Role.EDITOR: frozenset(_CONTENT_READ | _CONTENT_WRITE),
    Role.VIEWER: frozenset(_CONTENT_READ),
    Role.ADMIN: frozenset(Permission),
}

# The most any delegation edge can carry: no billing, keys or administration
DELEGATABLE_PERMISSIONS: frozenset[Permission] = frozenset(_CONTENT_READ | _CONTENT_WRITE)


# =============================================================================
# Role resolution
# =============================================================================


def parse_role(value: Any) -> Role:
    """
    Validate a role name against the allow-list.

    Raises:
        InvalidRoleError: Unknown role (never silently defaulted)
    """
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Rejected role outside allow-list: {value!r}")
        raise InvalidRoleError(f"Invalid role: {value!r}")


def resolve_role(user: Mapping[str, Any]) -> Role:
    """
    Canonical role of a stored user record.

    Uses the `role` field when present, else the first entry of the
    legacy `roles` array.

    Raises:
        InvalidRoleError: Missing role or a value outside the allow-list
    """
    role = user.get("role")
    if not role:
        legacy = user.get("roles")
        if isinstance(legacy, str):
            legacy = [legacy]
        if legacy:
            role = legacy[0]
    if not role:
        raise InvalidRoleError(f"User {user.get('id', '?')} has no role")
    return parse_role(role)


def permissions_for_role(role: Role | str) -> frozenset[str]:
    """Default permission strings for a role."""
    return frozenset(p.value for p in ROLE_PERMISSIONS[parse_role(role)])


def delegate_permissions(role: Role | str) -> frozenset[str]:
    """Permissions a delegation edge with this role carries."""
    granted = ROLE_PERMISSIONS[parse_role(role)] & DELEGATABLE_PERMISSIONS
    return frozenset(p.value for p in granted)


def normalize_permissions(values: Iterable[str] | str | None) -> frozenset[str]:
    """Accept a single permission string or any iterable of them."""
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(str(v) for v in values if v)
