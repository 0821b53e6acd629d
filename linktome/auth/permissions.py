"""
Permission Resolver.

Two pieces:
- the endpoint -> required permissions table (endpoints.yaml)
- authorize(), which checks a Principal against those permissions in
  a requested context (own data, a delegated user, or a company)

authorize() never raises for a denial; it returns an
AuthorizationDecision whose reason is for logs only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from linktome.auth.principal import Principal
from linktome.auth.roles import Permission
from linktome.config import ConfigurationError

logger = logging.getLogger(__name__)

ENDPOINTS_FILE = Path(__file__).with_name("endpoints.yaml")

_KNOWN_PERMISSIONS = frozenset(p.value for p in Permission)


# =============================================================================
# Endpoint table
# =============================================================================


@dataclass(frozen=True)
class EndpointRule:
    """Required permissions for one endpoint."""

    permissions: tuple[str, ...]
    api: bool = True


class EndpointPermissions:
    """The static endpoint -> permissions table."""

    def __init__(self, rules: Mapping[str, EndpointRule], version: int | None = None):
        self._rules = dict(rules)
        self.version = version

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EndpointPermissions:
        """
        Build the table from parsed YAML.

        Raises:
            ConfigurationError: Malformed entry or unknown permission name
        """
        endpoints = data.get("endpoints")
        if not isinstance(endpoints, Mapping):
            raise ConfigurationError("Endpoint table must have an 'endpoints' mapping")

        rules = {}
        for name, entry in endpoints.items():
            entry = entry or {}
            permissions = entry.get("permissions")
            if not isinstance(permissions, list):
                raise ConfigurationError(f"Endpoint {name}: 'permissions' must be a list")
            unknown = set(permissions) - _KNOWN_PERMISSIONS
            if unknown:
                raise ConfigurationError(f"Endpoint {name}: unknown permissions {sorted(unknown)}")
            rules[name] = EndpointRule(
                permissions=tuple(permissions),
                api=bool(entry.get("api", True)),
            )
        return cls(rules, version=data.get("version"))

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> EndpointPermissions:
        path = Path(path) if path else ENDPOINTS_FILE
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        table = cls.from_dict(data)
        logger.info(f"Loaded {len(table)} endpoint permission rules from {path.name}")
        return table

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._rules

    def endpoints(self) -> list[str]:
        return sorted(self._rules)

    def get_required_permissions(self, endpoint: str, via_api: bool = False) -> list[str] | None:
        """
        Required permissions, or None if the endpoint must be denied.

        None is returned for endpoints missing from the table, and for
        session-only endpoints reached through an API key.
        """
        rule = self._rules.get(endpoint)
        if rule is None:
            return None
        if via_api and not rule.api:
            return None
        return list(rule.permissions)


@lru_cache
def get_endpoint_permissions() -> EndpointPermissions:
    """The bundled endpoint table, loaded once."""
    return EndpointPermissions.from_yaml()


def get_required_permissions(endpoint: str, via_api: bool = False) -> list[str] | None:
    return get_endpoint_permissions().get_required_permissions(endpoint, via_api=via_api)


# =============================================================================
# Authorization
# =============================================================================


class AuthorizationScope(str, Enum):
    """Which rule produced the decision."""

    COMPANY = "company"
    DELEGATED = "delegated"
    SELF = "self"


@dataclass(frozen=True)
class AuthorizationDecision:
    """Allow, or deny with a reason for the logs."""

    allowed: bool
    scope: AuthorizationScope
    reason: str | None = None

    @classmethod
    def allow(cls, scope: AuthorizationScope) -> AuthorizationDecision:
        return cls(allowed=True, scope=scope)

    @classmethod
    def deny(cls, scope: AuthorizationScope, reason: str) -> AuthorizationDecision:
        return cls(allowed=False, scope=scope, reason=reason)


def _first_missing(required: Iterable[str], granted: frozenset[str]) -> str | None:
    for permission in required:
        if permission not in granted:
            return permission
    return None


def authorize(
    principal: Principal,
    required: Iterable[str],
    context_user_id: str | None = None,
    context_company_id: str | None = None,
) -> AuthorizationDecision:
    """
    Decide whether a principal may call an endpoint in a context.

    Evaluated in order:
    1. Company context: the membership for that company must hold every
       required permission. Global permissions are not consulted. API
       keys must also carry the permission in their own scope. A company
       context never reaches a personal account, so it cannot be combined
       with a user context.
    2. Another user's context: an accepted management edge to that user
       must hold every required permission. API keys must also carry
       the permission in their own scope.
    3. Own context (or none): the principal's own permissions.
    """
    required = list(required)

    if context_company_id:
        scope = AuthorizationScope.COMPANY
        if context_user_id:
            return AuthorizationDecision.deny(scope, "company context cannot act on a user account")
        membership = principal.membership(context_company_id)
        if membership is None:
            return AuthorizationDecision.deny(scope, f"not a member of company {context_company_id}")
        missing = _first_missing(required, membership.permissions)
        if missing:
            return AuthorizationDecision.deny(
                scope, f"company role {membership.role} lacks {missing}"
            )
        if principal.is_api_key:
            missing = _first_missing(required, principal.permissions)
            if missing:
                return AuthorizationDecision.deny(scope, f"API key scope lacks {missing}")
        return AuthorizationDecision.allow(scope)

    if context_user_id and context_user_id != principal.user_id:
        scope = AuthorizationScope.DELEGATED
        link = principal.managed_link(context_user_id)
        if link is None:
            return AuthorizationDecision.deny(scope, "no management relationship")
        missing = _first_missing(required, link.permissions)
        if missing:
            return AuthorizationDecision.deny(scope, f"management role {link.role} lacks {missing}")
        if principal.is_api_key:
            missing = _first_missing(required, principal.permissions)
            if missing:
                return AuthorizationDecision.deny(scope, f"API key scope lacks {missing}")
        return AuthorizationDecision.allow(scope)

    scope = AuthorizationScope.SELF
    missing = _first_missing(required, principal.permissions)
    if missing:
        return AuthorizationDecision.deny(scope, f"missing permission {missing}")
    return AuthorizationDecision.allow(scope)
