"""
Credential store - users, delegation edges and company memberships.

Everything identity-related that is persisted, except refresh tokens
(refresh.py) and API keys (api_keys.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from linktome.auth.principal import CompanyMembership, LinkDirection, ManagementLink
from linktome.auth.roles import (
    Role,
    delegate_permissions,
    normalize_permissions,
    parse_role,
    permissions_for_role,
    resolve_role,
)
from linktome.core.utils import Clock, generate_id, utc_now
from linktome.ratelimit.tiers import UserTier, resolve_tier
from linktome.storage.base import Collections, TableStorage

logger = logging.getLogger(__name__)


class EdgeState(str, Enum):
    """Lifecycle of a management edge. Only ACCEPTED edges authorize anything."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Identity:
    """Everything a credential needs to know about its owner."""

    user_id: str
    email: str | None
    username: str | None
    role: Role
    permissions: frozenset[str]
    management_links: tuple[ManagementLink, ...]
    company_memberships: tuple[CompanyMembership, ...]
    is_sub_account: bool
    tier: UserTier


def edge_id(manager_user_id: str, managed_user_id: str) -> str:
    return f"{manager_user_id}:{managed_user_id}"


def membership_id(company_id: str, user_id: str) -> str:
    return f"{company_id}:{user_id}"


def is_user_manager(user: dict[str, Any]) -> bool:
    """Is this account flagged as managing other accounts?"""
    return bool(user.get("is_user_manager")) or user.get("role") == Role.USER_MANAGER.value


class CredentialStore:
    """Reads and writes identity records in the table store."""

    def __init__(self, storage: TableStorage, clock: Clock = utc_now):
        self.storage = storage
        self.clock = clock

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return await self.storage.get(Collections.USERS, user_id)

    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        rows = await self.storage.query(Collections.USERS, {"email": email.strip().lower()}, limit=1)
        return rows[0] if rows else None

    async def get_user_by_username(self, username: str) -> dict[str, Any] | None:
        rows = await self.storage.query(Collections.USERS, {"username": username.strip().lower()}, limit=1)
        return rows[0] if rows else None

    async def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        role: Role | str = Role.USER,
        tier: UserTier | str = UserTier.FREE,
        is_sub_account: bool = False,
        parent_user_id: str | None = None,
        is_user_manager: bool = False,
    ) -> dict[str, Any]:
        """
        Create a new user.

        Raises:
            ValueError: Email or username already registered
            InvalidRoleError: Role outside the allow-list
        """
        email = email.strip().lower()
        username = username.strip().lower()
        if await self.get_user_by_email(email):
            raise ValueError("Email already registered")
        if await self.get_user_by_username(username):
            raise ValueError("Username already taken")

        now = self.clock().isoformat()
        user = {
            "id": generate_id("user"),
            "email": email,
            "username": username,
            "password_hash": password_hash,
            "role": parse_role(role).value,
            "tier": resolve_tier(tier).value,
            "is_active": True,
            "is_sub_account": is_sub_account,
            "parent_user_id": parent_user_id,
            "is_user_manager": is_user_manager,
            "created_at": now,
            "updated_at": now,
        }
        await self.storage.save(Collections.USERS, user["id"], user)
        return user

    async def set_user_active(self, user_id: str, active: bool) -> bool:
        return await self.storage.update(
            Collections.USERS, user_id,
            {"is_active": active, "updated_at": self.clock().isoformat()},
        )

    async def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        return await self.storage.update(
            Collections.USERS, user_id,
            {"password_hash": password_hash, "updated_at": self.clock().isoformat()},
        )

    async def set_user_tier(self, user_id: str, tier: UserTier | str) -> bool:
        return await self.storage.update(
            Collections.USERS, user_id,
            {"tier": resolve_tier(tier).value, "updated_at": self.clock().isoformat()},
        )

    # =========================================================================
    # Management edges
    # =========================================================================

    async def request_management(
        self,
        manager_user_id: str,
        managed_user_id: str,
        role: Role | str = Role.EDITOR,
    ) -> dict[str, Any]:
        """
        Create (or re-open) a pending edge manager -> managed.

        Raises:
            ValueError: Self-management or unknown target user
        """
        if manager_user_id == managed_user_id:
            raise ValueError("Cannot manage your own account")
        if not await self.get_user(managed_user_id):
            raise ValueError("User not found")

        now = self.clock().isoformat()
        key = edge_id(manager_user_id, managed_user_id)
        existing = await self.storage.get(Collections.USER_MANAGEMENTS, key)
        edge = {
            "manager_user_id": manager_user_id,
            "managed_user_id": managed_user_id,
            "role": parse_role(role).value,
            "state": EdgeState.PENDING.value,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        await self.storage.save(Collections.USER_MANAGEMENTS, key, edge)
        return edge

    async def respond_to_management(
        self,
        managed_user_id: str,
        manager_user_id: str,
        accept: bool,
    ) -> dict[str, Any] | None:
        """Accept or reject a pending edge. Only the managed user may respond."""
        key = edge_id(manager_user_id, managed_user_id)
        edge = await self.storage.get(Collections.USER_MANAGEMENTS, key)
        if not edge or edge.get("state") != EdgeState.PENDING.value:
            return None

        state = EdgeState.ACCEPTED if accept else EdgeState.REJECTED
        updates = {"state": state.value, "updated_at": self.clock().isoformat()}
        await self.storage.update(Collections.USER_MANAGEMENTS, key, updates)
        return {**edge, **updates}

    async def list_management_edges(self, user_id: str) -> list[dict[str, Any]]:
        """Every edge the user is on either side of, in any state."""
        as_manager = [e async for e in self.storage.scan(
            Collections.USER_MANAGEMENTS, {"manager_user_id": user_id}
        )]
        as_managed = [e async for e in self.storage.scan(
            Collections.USER_MANAGEMENTS, {"managed_user_id": user_id}
        )]
        return as_manager + as_managed

    async def load_management_links(self, user_id: str) -> tuple[ManagementLink, ...]:
        """
        Accepted edges as links, permissions derived from the edge role.

        Raises:
            InvalidRoleError: An edge carries a role outside the allow-list
        """
        links: list[ManagementLink] = []
        for edge in await self.list_management_edges(user_id):
            if edge.get("state") != EdgeState.ACCEPTED.value:
                continue
            role = parse_role(edge.get("role"))
            if edge["manager_user_id"] == user_id:
                other, direction = edge["managed_user_id"], LinkDirection.MANAGER
            else:
                other, direction = edge["manager_user_id"], LinkDirection.MANAGED
            links.append(ManagementLink(
                user_id=other,
                role=role.value,
                permissions=delegate_permissions(role),
                direction=direction,
            ))
        return tuple(links)

    # =========================================================================
    # Company memberships
    # =========================================================================

    async def add_company_member(
        self,
        company_id: str,
        user_id: str,
        role: Role | str = Role.COMPANY_MEMBER,
        permissions: list[str] | None = None,
    ) -> dict[str, Any]:
        role = parse_role(role)
        row = {
            "company_id": company_id,
            "user_id": user_id,
            "role": role.value,
            "permissions": sorted(permissions) if permissions is not None else None,
            "created_at": self.clock().isoformat(),
        }
        await self.storage.save(Collections.COMPANY_MEMBERS, membership_id(company_id, user_id), row)
        return row

    async def remove_company_member(self, company_id: str, user_id: str) -> bool:
        return await self.storage.delete(Collections.COMPANY_MEMBERS, membership_id(company_id, user_id))

    async def list_company_members(self, company_id: str) -> list[dict[str, Any]]:
        return [m async for m in self.storage.scan(Collections.COMPANY_MEMBERS, {"company_id": company_id})]

    async def load_company_memberships(self, user_id: str) -> tuple[CompanyMembership, ...]:
        memberships = []
        async for row in self.storage.scan(Collections.COMPANY_MEMBERS, {"user_id": user_id}):
            stored = row.get("permissions")
            permissions = (
                normalize_permissions(stored) if stored is not None
                else permissions_for_role(row.get("role"))
            )
            memberships.append(CompanyMembership(
                company_id=row["company_id"],
                role=parse_role(row.get("role")).value,
                permissions=permissions,
            ))
        return tuple(memberships)

    # =========================================================================
    # Identity
    # =========================================================================

    async def load_identity(self, user: dict[str, Any]) -> Identity:
        """
        Resolve role, permissions, links and memberships for a user record.

        Management links are only loaded for accounts flagged as managers.

        Raises:
            InvalidRoleError: Stored role is outside the allow-list
        """
        role = resolve_role(user)
        links: tuple[ManagementLink, ...] = ()
        if is_user_manager(user):
            links = await self.load_management_links(user["id"])

        return Identity(
            user_id=user["id"],
            email=user.get("email"),
            username=user.get("username"),
            role=role,
            permissions=permissions_for_role(role),
            management_links=links,
            company_memberships=await self.load_company_memberships(user["id"]),
            is_sub_account=bool(user.get("is_sub_account")),
            tier=resolve_tier(user.get("tier")),
        )
