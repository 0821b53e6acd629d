# =============================================================================
# JWT Access Tokens
# =============================================================================
#
# This module issues and validates the signed bearer tokens that carry a
# session's identity:
#   - sub, email, username
#   - roles (singleton list, kept as a list for older clients)
#   - permissions
#   - userManagements / companyMemberships (optional)
#   - iat, exp, iss, jti
#
# validate() never raises: every failure comes back as an invalid
# TokenValidation and is reported to the security audit log.
#
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

import jwt

from linktome.auth.credentials import Identity
from linktome.auth.principal import AuthMode, CompanyMembership, ManagementLink, Principal
from linktome.auth.roles import InvalidRoleError, Role, normalize_permissions, parse_role
from linktome.config import AuthConfig
from linktome.core.utils import Clock, generate_id, utc_now
from linktome.integrations.audit import SecurityAuditLog, SecurityEvent
from linktome.ratelimit.tiers import UserTier, resolve_tier

logger = logging.getLogger(__name__)

DEFAULT_ROLES = ["user"]


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class TokenValidation:
    """Result of validating an access token: a Principal, or a reason."""

    valid: bool
    principal: Principal | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, principal: Principal) -> TokenValidation:
        return cls(valid=True, principal=principal)

    @classmethod
    def invalid(cls, reason: str) -> TokenValidation:
        return cls(valid=False, reason=reason)


def _as_list(value: Any) -> list[Any]:
    """Normalize a claim seen as either a single value or a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# =============================================================================
# Token Service
# =============================================================================


class TokenService:
    """Signs and verifies access tokens with the configured HMAC key."""

    def __init__(
        self,
        config: AuthConfig,
        audit: SecurityAuditLog | None = None,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.audit = audit
        self.clock = clock

    # =========================================================================
    # Issue
    # =========================================================================

    def issue(
        self,
        user_id: str,
        email: str | None,
        username: str | None,
        role: Role | str,
        permissions: Iterable[str],
        management_links: Iterable[ManagementLink] | None = None,
        company_memberships: Iterable[CompanyMembership] | None = None,
        ttl_seconds: int | None = None,
        is_sub_account: bool = False,
        tier: UserTier | None = None,
    ) -> str:
        """
        Create a signed access token.

        Args:
            ttl_seconds: Lifetime; defaults to the configured access TTL

        Returns:
            Encoded JWT string
        """
        issued_at = int(self.clock().timestamp())
        ttl = ttl_seconds if ttl_seconds is not None else self.config.access_token_ttl_seconds

        payload: dict[str, Any] = {
            "sub": user_id,
            "email": email,
            "username": username,
            "roles": [parse_role(role).value],
            "permissions": sorted(set(permissions)),
            "iat": issued_at,
            "exp": issued_at + ttl,
            "iss": self.config.jwt_issuer,
            "jti": generate_id("tok"),
            "type": "access",
        }
        links = list(management_links or [])
        if links:
            payload["userManagements"] = [link.to_claim() for link in links]
        memberships = list(company_memberships or [])
        if memberships:
            payload["companyMemberships"] = [m.to_claim() for m in memberships]
        if is_sub_account:
            payload["isSubAccount"] = True
        if tier is not None:
            payload["tier"] = tier.value

        return jwt.encode(payload, self.config.signing_key, algorithm=self.config.jwt_algorithm)

    def issue_for(self, identity: Identity, ttl_seconds: int | None = None) -> str:
        """Create an access token carrying a loaded identity."""
        return self.issue(
            user_id=identity.user_id,
            email=identity.email,
            username=identity.username,
            role=identity.role,
            permissions=identity.permissions,
            management_links=identity.management_links,
            company_memberships=identity.company_memberships,
            ttl_seconds=ttl_seconds,
            is_sub_account=identity.is_sub_account,
            tier=identity.tier,
        )

    # =========================================================================
    # Validate
    # =========================================================================

    def validate(self, token: str | None, ip: str | None = None) -> TokenValidation:
        """
        Verify a token and turn its claims into a Principal.

        The signature is verified before any claim is looked at. Claims
        that may arrive as a single value or a list are normalized here
        and nowhere else.
        """
        if not token:
            return TokenValidation.invalid("Missing token")

        try:
            payload = jwt.decode(
                token,
                self.config.signing_key,
                algorithms=[self.config.jwt_algorithm],
                issuer=self.config.jwt_issuer,
                # Time claims are checked below against the injected clock
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["sub", "exp", "iat"],
                },
            )
        except jwt.InvalidTokenError as e:
            return self._reject(f"Invalid token: {e}", ip=ip)

        try:
            expires_at = int(payload["exp"])
        except (TypeError, ValueError):
            return self._reject("Malformed exp claim", ip=ip, user_id=payload.get("sub"))
        if self.clock().timestamp() >= expires_at:
            return self._reject("Token has expired", ip=ip, user_id=payload.get("sub"))

        if payload.get("type", "access") != "access":
            return self._reject(f"Expected access token, got {payload.get('type')}", ip=ip)

        roles = _as_list(payload.get("roles", payload.get("role"))) or DEFAULT_ROLES
        try:
            role = parse_role(roles[0])
        except InvalidRoleError as e:
            return self._reject(str(e), ip=ip, user_id=payload.get("sub"), event=SecurityEvent.INVALID_ROLE)

        try:
            links = tuple(ManagementLink.from_claim(c) for c in _as_list(payload.get("userManagements")))
            memberships = tuple(
                CompanyMembership.from_claim(c) for c in _as_list(payload.get("companyMemberships"))
            )
        except (AttributeError, TypeError, ValueError) as e:
            return self._reject(f"Malformed delegation claims: {e}", ip=ip, user_id=payload.get("sub"))

        principal = Principal(
            user_id=str(payload["sub"]),
            role=role,
            auth_mode=AuthMode.SESSION,
            email=payload.get("email"),
            username=payload.get("username"),
            permissions=normalize_permissions(payload.get("permissions")),
            management_links=links,
            company_memberships=memberships,
            is_sub_account=bool(payload.get("isSubAccount", False)),
            tier=resolve_tier(payload.get("tier")),
            metadata={"jti": payload.get("jti")},
        )
        return TokenValidation.ok(principal)

    def _reject(
        self,
        reason: str,
        ip: str | None = None,
        user_id: str | None = None,
        event: SecurityEvent = SecurityEvent.TOKEN_INVALID,
    ) -> TokenValidation:
        logger.warning(f"Access token rejected: {reason}")
        if self.audit:
            self.audit.emit(event, user_id=user_id, ip=ip, metadata={"reason": reason})
        return TokenValidation.invalid(reason)
