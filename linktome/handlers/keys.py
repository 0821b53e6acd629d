"""
API key management handlers (session only).

The full key is returned by createApiKey and never again. The number of
active keys is capped by the owner's subscription tier.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from linktome.auth.api_keys import ApiKeyGenerationError
from linktome.gateway.http import HandlerError, HttpResponse, RequestContext, json_response
from linktome.gateway.routing import HandlerRegistry
from linktome.handlers import parse_body
from linktome.integrations.audit import SecurityEvent
from linktome.ratelimit.tiers import resolve_tier

if TYPE_CHECKING:
    from linktome.services import Services

logger = logging.getLogger(__name__)


class CreateApiKeyRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    permissions: list[str] = Field(default_factory=list)


class UpdateApiKeyRequest(BaseModel):
    keyId: str
    permissions: list[str]


class DeleteApiKeyRequest(BaseModel):
    keyId: str


def register(registry: HandlerRegistry, services: Services) -> None:
    api_keys = services.api_keys

    @registry.route("admin/listApiKeys")
    async def list_api_keys(ctx: RequestContext) -> dict:
        principal = ctx.require_principal()
        return {"keys": await api_keys.list_keys(principal.user_id)}

    @registry.route("admin/createApiKey")
    async def create_api_key(ctx: RequestContext) -> HttpResponse:
        principal = ctx.require_principal()
        data = parse_body(ctx, CreateApiKeyRequest)

        user = await services.credentials.get_user(principal.user_id)
        if not user:
            raise HandlerError(404, "User not found")
        limits = services.config.limits_for(resolve_tier(user.get("tier")))
        if await api_keys.count_active(principal.user_id) >= limits.max_api_keys:
            raise HandlerError(403, f"Your plan allows {limits.max_api_keys} active API keys")

        try:
            issued = await api_keys.issue(principal.user_id, data.name, data.permissions)
        except ValueError as e:
            raise HandlerError(400, str(e))
        except ApiKeyGenerationError:
            logger.error(f"API key id space exhausted for {principal.user_id}")
            raise HandlerError(503, "Could not create API key, please retry")

        services.audit.emit(
            SecurityEvent.API_KEY_CREATED, user_id=principal.user_id, ip=ctx.request.client_ip,
            endpoint=ctx.endpoint, metadata={"key_id": issued.key_id},
        )
        return json_response({"key": issued.key, **issued.record}, status_code=201)

    @registry.route("admin/updateApiKey")
    async def update_api_key(ctx: RequestContext) -> dict:
        principal = ctx.require_principal()
        data = parse_body(ctx, UpdateApiKeyRequest)
        try:
            updated = await api_keys.update_permissions(principal.user_id, data.keyId, data.permissions)
        except ValueError as e:
            raise HandlerError(400, str(e))
        if updated is None:
            raise HandlerError(404, "API key not found")
        return updated

    @registry.route("admin/deleteApiKey")
    async def delete_api_key(ctx: RequestContext) -> dict:
        principal = ctx.require_principal()
        data = parse_body(ctx, DeleteApiKeyRequest)
        if not await api_keys.delete(principal.user_id, data.keyId):
            raise HandlerError(404, "API key not found")
        services.audit.emit(
            SecurityEvent.API_KEY_DELETED, user_id=principal.user_id, ip=ctx.request.client_ip,
            endpoint=ctx.endpoint, metadata={"key_id": data.keyId},
        )
        return {"deleted": data.keyId}
