"""
API keys.

Format: ltm_<8-char key id>_<32-char secret>, both segments lowercase
alphanumeric. Only a SHA-256 hash of the secret is stored; the full
key is returned once, at creation.

A key resolves to its owner's identity with the key's own permission
scope. Keys are soft-disabled, never silently deleted, when a
subscription downgrade removes key slots.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from linktome.auth.credentials import CredentialStore
from linktome.auth.principal import AuthMode, CompanyMembership, ManagementLink, Principal
from linktome.auth.roles import Role, normalize_permissions, permissions_for_role
from linktome.core.tasks import BackgroundTasks
from linktome.core.utils import Clock, random_alphanumeric, utc_now
from linktome.ratelimit.tiers import UserTier
from linktome.storage.base import Collections, TableStorage

logger = logging.getLogger(__name__)

KEY_PREFIX = "ltm"
KEY_ID_LENGTH = 8
KEY_SECRET_LENGTH = 32
MAX_KEY_ID_ATTEMPTS = 5
API_KEY_HEADER = "x-api-key"
DOWNGRADE_REASON = "subscription_downgrade"

API_KEY_PATTERN = re.compile(
    rf"^{KEY_PREFIX}_([a-z0-9]{{{KEY_ID_LENGTH}}})_([a-z0-9]{{{KEY_SECRET_LENGTH}}})$"
)


class ApiKeyGenerationError(Exception):
    """Could not find an unused key id within the retry budget."""
    pass


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class IssuedApiKey:
    """A freshly created key. `key` is never retrievable again."""

    key: str
    key_id: str
    record: dict[str, Any]


@dataclass(frozen=True)
class ApiKeyResolution:
    """Result of resolving a presented API key."""

    valid: bool
    key_id: str | None = None
    owner_user_id: str | None = None
    key_permissions: frozenset[str] = frozenset()
    owner_role: Role | None = None
    owner_email: str | None = None
    owner_username: str | None = None
    management_links: tuple[ManagementLink, ...] = ()
    company_memberships: tuple[CompanyMembership, ...] = ()
    is_sub_account: bool = False
    tier: UserTier = UserTier.FREE
    error: str | None = None
    disabled_reason: str | None = None

    @classmethod
    def invalid(cls, error: str, key_id: str | None = None, disabled_reason: str | None = None) -> ApiKeyResolution:
        return cls(valid=False, key_id=key_id, error=error, disabled_reason=disabled_reason)

    def to_principal(self) -> Principal:
        """
        Principal for this key.

        Effective permissions are the key's scope, further bounded by
        what the owner's current role still grants.
        """
        if not self.valid or self.owner_role is None or self.owner_user_id is None:
            raise ValueError("Cannot build a principal from an invalid API key")
        return Principal(
            user_id=self.owner_user_id,
            role=self.owner_role,
            auth_mode=AuthMode.APIKEY,
            email=self.owner_email,
            username=self.owner_username,
            permissions=self.key_permissions & permissions_for_role(self.owner_role),
            management_links=self.management_links,
            company_memberships=self.company_memberships,
            is_sub_account=self.is_sub_account,
            tier=self.tier,
            api_key_id=self.key_id,
        )


# =============================================================================
# Helpers
# =============================================================================


def hash_secret(secret: str) -> str:
    """One-way hash of a key secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def parse_api_key(value: str | None) -> tuple[str, str] | None:
    """Split a full key into (key id, secret), or None if malformed."""
    if not value:
        return None
    match = API_KEY_PATTERN.match(value.strip())
    if not match:
        return None
    return match.group(1), match.group(2)


def extract_api_key(headers: Mapping[str, str]) -> str | None:
    """
    Find an API key in request headers.

    Accepts `Authorization: Bearer ltm_...` or the X-API-Key header.
    Header names are expected lowercased.
    """
    authorization = headers.get("authorization", "")
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() == "bearer" and credential.strip().startswith(f"{KEY_PREFIX}_"):
        return credential.strip()
    api_key = headers.get(API_KEY_HEADER)
    return api_key.strip() if api_key else None


def public_view(row: dict[str, Any]) -> dict[str, Any]:
    """A key row as it may be shown to its owner (no secret hash)."""
    return {
        "key_id": row["key_id"],
        "name": row.get("name"),
        "permissions": sorted(row.get("permissions") or []),
        "active": row.get("active", False),
        "disabled_reason": row.get("disabled_reason"),
        "created_at": row.get("created_at"),
        "last_used_at": row.get("last_used_at"),
        "last_used_ip": row.get("last_used_ip"),
    }


# =============================================================================
# API Key Service
# =============================================================================


class ApiKeyService:
    """Creates, resolves and administers API keys."""

    def __init__(
        self,
        storage: TableStorage,
        credentials: CredentialStore,
        tasks: BackgroundTasks | None = None,
        clock: Clock = utc_now,
    ):
        self.storage = storage
        self.credentials = credentials
        self.tasks = tasks or BackgroundTasks()
        self.clock = clock

    # =========================================================================
    # Issue
    # =========================================================================

    async def issue(self, user_id: str, name: str, permissions: Iterable[str]) -> IssuedApiKey:
        """
        Create a key for a user.

        Raises:
            ValueError: Unknown user, or permissions beyond the owner's role
            ApiKeyGenerationError: Every candidate key id collided
        """
        owner = await self.credentials.get_user(user_id)
        if not owner:
            raise ValueError("User not found")

        requested = normalize_permissions(permissions)
        identity = await self.credentials.load_identity(owner)
        excess = requested - identity.permissions
        if excess:
            raise ValueError(f"Permissions not available to this account: {sorted(excess)}")

        key_id = await self._new_key_id()
        secret = random_alphanumeric(KEY_SECRET_LENGTH)
        record = {
            "id": key_id,
            "key_id": key_id,
            "owner_user_id": user_id,
            "secret_hash": hash_secret(secret),
            "name": name,
            "permissions": sorted(requested),
            "active": True,
            "disabled_reason": None,
            "created_at": self.clock().isoformat(),
            "last_used_at": None,
            "last_used_ip": None,
        }
        await self.storage.save(Collections.API_KEYS, key_id, record)
        logger.info(f"Issued API key {key_id} for {user_id}")
        return IssuedApiKey(
            key=f"{KEY_PREFIX}_{key_id}_{secret}",
            key_id=key_id,
            record=public_view(record),
        )

    async def _new_key_id(self) -> str:
        for _ in range(MAX_KEY_ID_ATTEMPTS):
            candidate = random_alphanumeric(KEY_ID_LENGTH)
            if await self.storage.get(Collections.API_KEYS, candidate) is None:
                return candidate
        raise ApiKeyGenerationError(
            f"No unused API key id after {MAX_KEY_ID_ATTEMPTS} attempts"
        )

    # =========================================================================
    # Resolve
    # =========================================================================

    async def resolve(self, headers: Mapping[str, str], ip: str | None = None) -> ApiKeyResolution:
        """
        Resolve the API key presented in request headers.

        Expected failures come back as an invalid ApiKeyResolution.
        On success the key's last-used metadata is updated in the
        background; that update can never fail the request.

        Raises:
            InvalidRoleError: The owner's stored role is outside the allow-list
        """
        presented = extract_api_key(headers)
        if not presented:
            return ApiKeyResolution.invalid("Missing API key")

        parsed = parse_api_key(presented)
        if not parsed:
            return ApiKeyResolution.invalid("Malformed API key")
        key_id, secret = parsed

        row = await self.storage.get(Collections.API_KEYS, key_id)
        if not row:
            return ApiKeyResolution.invalid("Unknown API key", key_id=key_id)

        if not hmac.compare_digest(hash_secret(secret), str(row.get("secret_hash") or "")):
            return ApiKeyResolution.invalid("Invalid API key", key_id=key_id)

        if not row.get("active", False):
            return ApiKeyResolution.invalid(
                "API key is disabled", key_id=key_id, disabled_reason=row.get("disabled_reason")
            )

        owner = await self.credentials.get_user(row["owner_user_id"])
        if not owner:
            return ApiKeyResolution.invalid("API key owner not found", key_id=key_id)
        if not owner.get("is_active", True):
            return ApiKeyResolution.invalid("API key owner account is disabled", key_id=key_id)

        identity = await self.credentials.load_identity(owner)

        self.tasks.spawn(self._touch(key_id, ip), name=f"apikey:{key_id}:last_used")

        return ApiKeyResolution(
            valid=True,
            key_id=key_id,
            owner_user_id=identity.user_id,
            key_permissions=normalize_permissions(row.get("permissions")),
            owner_role=identity.role,
            owner_email=identity.email,
            owner_username=identity.username,
            management_links=identity.management_links,
            company_memberships=identity.company_memberships,
            is_sub_account=identity.is_sub_account,
            tier=identity.tier,
        )

    async def _touch(self, key_id: str, ip: str | None) -> None:
        await self.storage.update(Collections.API_KEYS, key_id, {
            "last_used_at": self.clock().isoformat(),
            "last_used_ip": ip,
        })

    # =========================================================================
    # Administration
    # =========================================================================

    async def get_owned(self, user_id: str, key_id: str) -> dict[str, Any] | None:
        row = await self.storage.get(Collections.API_KEYS, key_id)
        if not row or row.get("owner_user_id") != user_id:
            return None
        return row

    async def list_keys(self, user_id: str) -> list[dict[str, Any]]:
        rows = [row async for row in self.storage.scan(Collections.API_KEYS, {"owner_user_id": user_id})]
        rows.sort(key=lambda r: r.get("created_at") or "")
        return [public_view(row) for row in rows]

    async def count_active(self, user_id: str) -> int:
        count = 0
        async for _ in self.storage.scan(Collections.API_KEYS, {"owner_user_id": user_id, "active": True}):
            count += 1
        return count

    async def update_permissions(
        self,
        user_id: str,
        key_id: str,
        permissions: Iterable[str],
    ) -> dict[str, Any] | None:
        """
        Replace a key's permission scope.

        Raises:
            ValueError: Permissions beyond the owner's role
        """
        row = await self.get_owned(user_id, key_id)
        if not row:
            return None

        owner = await self.credentials.get_user(user_id)
        identity = await self.credentials.load_identity(owner)
        requested = normalize_permissions(permissions)
        excess = requested - identity.permissions
        if excess:
            raise ValueError(f"Permissions not available to this account: {sorted(excess)}")

        updates = {"permissions": sorted(requested)}
        await self.storage.update(Collections.API_KEYS, key_id, updates)
        return public_view({**row, **updates})

    async def delete(self, user_id: str, key_id: str) -> bool:
        if not await self.get_owned(user_id, key_id):
            return False
        return await self.storage.delete(Collections.API_KEYS, key_id)

    async def enforce_slot_limit(self, user_id: str, max_keys: int) -> list[str]:
        """
        Soft-disable the newest active keys beyond max_keys.

        Returns the ids of the keys that were disabled.
        """
        active = [
            row async for row in self.storage.scan(
                Collections.API_KEYS, {"owner_user_id": user_id, "active": True}
            )
        ]
        if len(active) <= max_keys:
            return []

        active.sort(key=lambda r: r.get("created_at") or "")
        surplus = active[max(max_keys, 0):]
        now = self.clock().isoformat()
        for row in surplus:
            await self.storage.update(Collections.API_KEYS, row["key_id"], {
                "active": False,
                "disabled_reason": DOWNGRADE_REASON,
                "disabled_at": now,
            })
        disabled = [row["key_id"] for row in surplus]
        logger.info(f"Disabled {len(disabled)} API keys for {user_id} after downgrade")
        return disabled
