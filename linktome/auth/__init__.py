"""
Authentication and authorization.

Who is calling:
- jwt.TokenService        session access tokens
- refresh.RefreshTokenStore  opaque refresh tokens
- api_keys.ApiKeyService  ltm_ API keys

What they may do:
- roles                   role allow-list and role -> permission table
- permissions             endpoint -> permission table and authorize()

Every gate returns a typed result instead of raising for expected
failures.
"""

from linktome.auth.roles import (
    InvalidRoleError,
    Permission,
    Role,
    parse_role,
    permissions_for_role,
    resolve_role,
)
from linktome.auth.principal import (
    AuthMode,
    CompanyMembership,
    LinkDirection,
    ManagementLink,
    Principal,
)
from linktome.auth.credentials import CredentialStore, EdgeState, Identity
from linktome.auth.passwords import hash_password, needs_rehash, verify_password
from linktome.auth.jwt import TokenService, TokenValidation
from linktome.auth.refresh import RefreshTokenStore, RefreshValidation
from linktome.auth.api_keys import (
    ApiKeyGenerationError,
    ApiKeyResolution,
    ApiKeyService,
    IssuedApiKey,
)
from linktome.auth.permissions import (
    AuthorizationDecision,
    EndpointPermissions,
    authorize,
    get_required_permissions,
)

__all__ = [
    # Roles
    "InvalidRoleError",
    "Permission",
    "Role",
    "parse_role",
    "permissions_for_role",
    "resolve_role",
    # Principal
    "AuthMode",
    "CompanyMembership",
    "LinkDirection",
    "ManagementLink",
    "Principal",
    # Credentials
    "CredentialStore",
    "EdgeState",
    "Identity",
    "hash_password",
    "needs_rehash",
    "verify_password",
    # Tokens and keys
    "TokenService",
    "TokenValidation",
    "RefreshTokenStore",
    "RefreshValidation",
    "ApiKeyGenerationError",
    "ApiKeyResolution",
    "ApiKeyService",
    "IssuedApiKey",
    # Authorization
    "AuthorizationDecision",
    "EndpointPermissions",
    "authorize",
    "get_required_permissions",
]
