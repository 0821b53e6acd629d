"""
Tests for the endpoint table and the permission resolver.
"""

import pytest

from linktome.auth.permissions import (
    AuthorizationScope,
    EndpointPermissions,
    authorize,
    get_endpoint_permissions,
    get_required_permissions,
)
from linktome.auth.principal import (
    AuthMode,
    CompanyMembership,
    LinkDirection,
    ManagementLink,
    Principal,
)
from linktome.auth.roles import Role
from linktome.config import ConfigurationError


def principal(permissions=(), auth_mode=AuthMode.SESSION, links=(), memberships=(), role=Role.USER):
    return Principal(
        user_id="owner",
        role=role,
        auth_mode=auth_mode,
        permissions=frozenset(permissions),
        management_links=tuple(links),
        company_memberships=tuple(memberships),
    )


EDITOR_EDGE = ManagementLink(
    user_id="managed",
    role="editor",
    permissions=frozenset({"read:links", "write:links", "write:profile"}),
)


# =============================================================================
# Endpoint table
# =============================================================================


class TestEndpointTable:
    def test_bundled_table_loads(self):
        table = get_endpoint_permissions()
        assert "admin/getLinks" in table
        assert table.get_required_permissions("admin/getLinks") == ["read:links"]

    def test_unmapped_endpoint_is_none(self):
        assert get_required_permissions("admin/neverHeardOfIt") is None
        assert get_required_permissions("admin/neverHeardOfIt", via_api=True) is None

    def test_session_only_endpoint_is_unmapped_for_api(self):
        assert get_required_permissions("admin/createApiKey") == ["manage:apikeys"]
        assert get_required_permissions("admin/createApiKey", via_api=True) is None

    def test_empty_permission_list_is_not_unmapped(self):
        assert get_required_permissions("admin/getMe", via_api=True) == []

    def test_unknown_permission_name_rejected(self):
        with pytest.raises(ConfigurationError):
            EndpointPermissions.from_dict({"endpoints": {"admin/x": {"permissions": ["read:everything"]}}})

    def test_malformed_entry_rejected(self):
        with pytest.raises(ConfigurationError):
            EndpointPermissions.from_dict({"endpoints": {"admin/x": {"permissions": "read:links"}}})
        with pytest.raises(ConfigurationError):
            EndpointPermissions.from_dict({})


# =============================================================================
# Own context
# =============================================================================


class TestSelf:
    def test_allowed_with_permission(self):
        decision = authorize(principal({"read:links"}), ["read:links"])
        assert decision.allowed
        assert decision.scope == AuthorizationScope.SELF

    def test_denied_on_first_missing(self):
        decision = authorize(principal({"read:links"}), ["read:links", "write:links"])
        assert not decision.allowed
        assert "write:links" in decision.reason

    def test_explicit_own_context(self):
        decision = authorize(principal({"read:links"}), ["read:links"], context_user_id="owner")
        assert decision.allowed
        assert decision.scope == AuthorizationScope.SELF

    def test_no_requirements(self):
        assert authorize(principal(), []).allowed


# =============================================================================
# Delegated context
# =============================================================================


class TestDelegated:
    def test_no_relationship(self):
        decision = authorize(principal({"write:links"}), ["read:links"], context_user_id="stranger")
        assert not decision.allowed
        assert decision.reason == "no management relationship"

    def test_session_uses_edge_permissions(self):
        p = principal(links=[EDITOR_EDGE])
        assert authorize(p, ["write:profile"], context_user_id="managed").allowed

    def test_edge_scope_bounds_session(self):
        p = principal({"manage:billing"}, links=[EDITOR_EDGE])
        assert not authorize(p, ["manage:billing"], context_user_id="managed").allowed

    def test_managed_direction_does_not_authorize(self):
        reverse = ManagementLink("managed", "editor", frozenset({"read:links"}), LinkDirection.MANAGED)
        p = principal(links=[reverse])
        assert not authorize(p, ["read:links"], context_user_id="managed").allowed

    def test_api_key_bounded_by_both_layers(self):
        p = principal({"read:links", "write:links"}, auth_mode=AuthMode.APIKEY, links=[EDITOR_EDGE])

        assert authorize(p, ["read:links"], context_user_id="managed").allowed
        assert authorize(p, ["write:links"], context_user_id="managed").allowed

        denied = authorize(p, ["write:profile"], context_user_id="managed")
        assert not denied.allowed
        assert denied.scope == AuthorizationScope.DELEGATED
        assert "API key" in denied.reason

    def test_api_key_cannot_exceed_edge(self):
        p = principal({"manage:billing"}, auth_mode=AuthMode.APIKEY, links=[EDITOR_EDGE])
        assert not authorize(p, ["manage:billing"], context_user_id="managed").allowed


# =============================================================================
# Company context
# =============================================================================


class TestCompany:
    MEMBERSHIP = CompanyMembership("co_1", "company_member", frozenset({"write:links"}))

    def test_company_context_bypasses_global_permissions(self):
        p = principal(memberships=[self.MEMBERSHIP])

        allowed = authorize(p, ["write:links"], context_company_id="co_1")
        assert allowed.allowed
        assert allowed.scope == AuthorizationScope.COMPANY

        assert not authorize(p, ["write:links"]).allowed

    def test_company_context_cannot_reach_a_user_account(self):
        p = principal(memberships=[self.MEMBERSHIP])

        stranger = authorize(p, ["write:links"], context_user_id="stranger", context_company_id="co_1")
        own = authorize(p, ["write:links"], context_user_id="owner", context_company_id="co_1")

        assert not stranger.allowed
        assert stranger.scope == AuthorizationScope.COMPANY
        assert not own.allowed

    def test_not_a_member(self):
        p = principal({"write:links"}, memberships=[self.MEMBERSHIP])
        assert not authorize(p, ["write:links"], context_company_id="co_2").allowed

    def test_membership_lacks_permission(self):
        p = principal({"read:analytics"}, memberships=[self.MEMBERSHIP])
        assert not authorize(p, ["read:analytics"], context_company_id="co_1").allowed

    def test_api_key_needs_key_scope_too(self):
        p = principal({"read:links"}, auth_mode=AuthMode.APIKEY, memberships=[self.MEMBERSHIP])
        assert not authorize(p, ["write:links"], context_company_id="co_1").allowed

        scoped = principal({"write:links"}, auth_mode=AuthMode.APIKEY, memberships=[self.MEMBERSHIP])
        assert authorize(scoped, ["write:links"], context_company_id="co_1").allowed
