"""
Profile and link handlers.

Both act on a bio page: the context user's (the ?userId= query parameter
when a manager works on a delegated account, else the caller), or the
company's page when ?companyId= is given.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, HttpUrl

from linktome.gateway.http import RequestContext
from linktome.gateway.routing import HandlerRegistry
from linktome.handlers import parse_body
from linktome.storage.base import Collections

if TYPE_CHECKING:
    from linktome.services import Services

MAX_LINKS = 100


class ProfileUpdate(BaseModel):
    displayName: str | None = Field(default=None, max_length=100)
    bio: str | None = Field(default=None, max_length=500)
    avatarUrl: HttpUrl | None = None


class LinkItem(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    url: HttpUrl
    active: bool = True


class LinksUpdate(BaseModel):
    links: list[LinkItem] = Field(max_length=MAX_LINKS)


def empty_profile(owner_field: str, owner_id: str) -> dict[str, Any]:
    return {owner_field: owner_id, "displayName": None, "bio": None, "avatarUrl": None}


@dataclass(frozen=True)
class Page:
    """The bio page a request acts on: a user's own, or a company's."""

    owner_field: str
    owner_id: str
    profiles: str
    links: str


def page_for(ctx: RequestContext) -> Page:
    if ctx.context_company_id:
        return Page("companyId", ctx.context_company_id,
                    Collections.COMPANY_PROFILES, Collections.COMPANY_LINKS)
    return Page("userId", ctx.require_target_user(), Collections.PROFILES, Collections.LINKS)


def register(registry: HandlerRegistry, services: Services) -> None:
    storage = services.storage

    async def load_profile(page: Page) -> dict[str, Any]:
        blank = empty_profile(page.owner_field, page.owner_id)
        row = await storage.get(page.profiles, page.owner_id)
        if not row:
            return blank
        return {key: row.get(key) for key in blank}

    @registry.route("admin/getProfile")
    async def get_profile(ctx: RequestContext) -> dict:
        return await load_profile(page_for(ctx))

    @registry.route("admin/updateProfile")
    async def update_profile(ctx: RequestContext) -> dict:
        page = page_for(ctx)
        data = parse_body(ctx, ProfileUpdate)
        profile = await load_profile(page)
        profile.update(data.model_dump(mode="json", exclude_unset=True))
        profile["updatedAt"] = services.clock().isoformat()
        await storage.save(page.profiles, page.owner_id, profile)
        return {key: profile.get(key) for key in empty_profile(page.owner_field, page.owner_id)}

    @registry.route("admin/getLinks")
    async def get_links(ctx: RequestContext) -> dict:
        page = page_for(ctx)
        row = await storage.get(page.links, page.owner_id)
        return {page.owner_field: page.owner_id, "links": row.get("links", []) if row else []}

    @registry.route("admin/updateLinks")
    async def update_links(ctx: RequestContext) -> dict:
        page = page_for(ctx)
        data = parse_body(ctx, LinksUpdate)
        links = [
            {**item.model_dump(mode="json"), "order": i}
            for i, item in enumerate(data.links)
        ]
        await storage.save(page.links, page.owner_id, {
            page.owner_field: page.owner_id,
            "links": links,
            "updatedAt": services.clock().isoformat(),
        })
        return {page.owner_field: page.owner_id, "links": links}
