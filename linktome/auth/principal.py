"""
Principal - the "who is calling and what may they do" for each request.

Built once per request by the dispatcher (from a session token or an
API key) and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from linktome.auth.roles import Role, normalize_permissions
from linktome.ratelimit.tiers import UserTier


class AuthMode(str, Enum):
    """How the credential for this request was presented."""

    SESSION = "session"
    APIKEY = "apikey"


class LinkDirection(str, Enum):
    """Which side of a management edge the principal is on."""

    MANAGER = "manager"  # principal may act on user_id's data
    MANAGED = "managed"  # user_id may act on the principal's data


@dataclass(frozen=True)
class ManagementLink:
    """
    An accepted delegation edge, seen from the principal's side.

    `user_id` is the account on the other end of the edge.
    """

    user_id: str
    role: str
    permissions: frozenset[str]
    direction: LinkDirection = LinkDirection.MANAGER

    def to_claim(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "role": self.role,
            "permissions": sorted(self.permissions),
            "direction": self.direction.value,
        }

    @classmethod
    def from_claim(cls, data: Mapping[str, Any]) -> ManagementLink:
        return cls(
            user_id=str(data.get("userId") or data.get("user_id") or ""),
            role=str(data.get("role", "")),
            permissions=normalize_permissions(data.get("permissions")),
            direction=LinkDirection(data.get("direction", LinkDirection.MANAGER.value)),
        )


@dataclass(frozen=True)
class CompanyMembership:
    """Role and permissions a user holds inside one company."""

    company_id: str
    role: str
    permissions: frozenset[str]

    def to_claim(self) -> dict[str, Any]:
        return {
            "companyId": self.company_id,
            "role": self.role,
            "permissions": sorted(self.permissions),
        }

    @classmethod
    def from_claim(cls, data: Mapping[str, Any]) -> CompanyMembership:
        return cls(
            company_id=str(data.get("companyId") or data.get("company_id") or ""),
            role=str(data.get("role", "")),
            permissions=normalize_permissions(data.get("permissions")),
        )


@dataclass(frozen=True)
class Principal:
    """
    Resolved identity for the current request.

    `permissions` is already bounded by the credential: for a session
    it is the token's permissions claim, for an API key it is the key's
    stored permissions.
    """

    user_id: str
    role: Role
    auth_mode: AuthMode
    email: str | None = None
    username: str | None = None
    permissions: frozenset[str] = frozenset()
    management_links: tuple[ManagementLink, ...] = ()
    company_memberships: tuple[CompanyMembership, ...] = ()
    is_sub_account: bool = False
    tier: UserTier = UserTier.FREE
    api_key_id: str | None = None

    # Extra context (never used for authorization)
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_api_key(self) -> bool:
        return self.auth_mode == AuthMode.APIKEY

    def managed_link(self, user_id: str) -> ManagementLink | None:
        """The edge that lets this principal act on user_id, if any."""
        for link in self.management_links:
            if link.user_id == user_id and link.direction == LinkDirection.MANAGER:
                return link
        return None

    def membership(self, company_id: str) -> CompanyMembership | None:
        """This principal's membership in company_id, if any."""
        for membership in self.company_memberships:
            if membership.company_id == company_id:
                return membership
        return None
