"""
Request handlers.

Each module exposes register(registry, services) and binds its handlers
to endpoint names. Handlers receive a RequestContext whose principal
has already passed authentication, rate limiting and authorization.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ValidationError

from linktome.gateway.http import HandlerError, RequestContext
from linktome.gateway.routing import HandlerRegistry

if TYPE_CHECKING:
    from linktome.services import Services

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_body(ctx: RequestContext, model: type[ModelT]) -> ModelT:
    """Validate the JSON body against a pydantic model, or fail with 400."""
    try:
        data = ctx.request.json()
    except ValueError:
        raise HandlerError(400, "Request body is not valid JSON")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise HandlerError(400, f"Invalid request body: {fields}")


def register_all(registry: HandlerRegistry, services: Services) -> None:
    from linktome.handlers import account, auth, keys, profile

    for module in (auth, account, keys, profile):
        module.register(registry, services)
