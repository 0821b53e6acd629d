"""
Account and delegation handlers.

A management edge lets a manager act on another user's data with the
edge role's delegated permissions. Edges start pending; only the
managed user can accept or reject them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from linktome.auth.credentials import EdgeState
from linktome.auth.roles import Role
from linktome.gateway.http import HandlerError, HttpResponse, RequestContext, json_response
from linktome.gateway.routing import HandlerRegistry
from linktome.handlers import parse_body

if TYPE_CHECKING:
    from linktome.services import Services

# Roles a management edge may carry
DELEGATE_ROLES = (Role.EDITOR, Role.VIEWER)


class RequestManagementRequest(BaseModel):
    userId: str
    role: Role = Role.EDITOR


class RespondToManagementRequest(BaseModel):
    managerUserId: str
    accept: bool


def edge_view(edge: dict[str, Any]) -> dict[str, Any]:
    return {
        "managerUserId": edge["manager_user_id"],
        "managedUserId": edge["managed_user_id"],
        "role": edge.get("role"),
        "state": edge.get("state"),
        "createdAt": edge.get("created_at"),
        "updatedAt": edge.get("updated_at"),
    }


def register(registry: HandlerRegistry, services: Services) -> None:
    credentials = services.credentials

    @registry.route("admin/getMe")
    async def get_me(ctx: RequestContext) -> dict:
        principal = ctx.require_principal()
        return {
            "id": principal.user_id,
            "email": principal.email,
            "username": principal.username,
            "role": principal.role.value,
            "permissions": sorted(principal.permissions),
            "tier": principal.tier.value,
            "isSubAccount": principal.is_sub_account,
            "authMode": principal.auth_mode.value,
            "userManagements": [link.to_claim() for link in principal.management_links],
            "companyMemberships": [m.to_claim() for m in principal.company_memberships],
        }

    @registry.route("admin/requestManagement")
    async def request_management(ctx: RequestContext) -> HttpResponse:
        principal = ctx.require_principal()
        data = parse_body(ctx, RequestManagementRequest)
        if data.role not in DELEGATE_ROLES:
            raise HandlerError(400, f"Role must be one of {[r.value for r in DELEGATE_ROLES]}")
        try:
            edge = await credentials.request_management(principal.user_id, data.userId, data.role)
        except ValueError as e:
            raise HandlerError(400, str(e))
        return json_response(edge_view(edge), status_code=201)

    @registry.route("admin/respondToManagement")
    async def respond_to_management(ctx: RequestContext) -> dict:
        principal = ctx.require_principal()
        data = parse_body(ctx, RespondToManagementRequest)
        edge = await credentials.respond_to_management(principal.user_id, data.managerUserId, data.accept)
        if edge is None:
            raise HandlerError(404, "No pending management request")
        return edge_view(edge)

    @registry.route("admin/listManagement")
    async def list_management(ctx: RequestContext) -> dict:
        user_id = ctx.require_target_user()
        edges = await credentials.list_management_edges(user_id)
        state = ctx.request.query.get("state")
        if state:
            if state not in {s.value for s in EdgeState}:
                raise HandlerError(400, f"Unknown state: {state}")
            edges = [e for e in edges if e.get("state") == state]
        return {
            "managing": [edge_view(e) for e in edges if e["manager_user_id"] == user_id],
            "managedBy": [edge_view(e) for e in edges if e["managed_user_id"] == user_id],
        }
