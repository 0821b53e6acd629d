"""
Route classification and the handler registry.

Three path shapes:
    api/v1/<name>   API-key route, aliased to the admin/<name> handler
    public/<name>   no identity required
    admin/<name>    session route

A leading '/' and a leading 'api/' host prefix before public/admin are
accepted. Handlers are registered explicitly by endpoint name and the
registry is checked against the endpoint permission table at startup.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from linktome.auth.permissions import EndpointPermissions
from linktome.gateway.http import RequestContext

logger = logging.getLogger(__name__)

_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")

API_PREFIX = "api/v1/"

Handler = Callable[[RequestContext], Awaitable[Any]]


class RegistryError(Exception):
    """Handler registration does not match the endpoint table."""
    pass


class RouteKind(str, Enum):
    API = "api"
    PUBLIC = "public"
    ADMIN = "admin"


@dataclass(frozen=True)
class Route:
    kind: RouteKind
    endpoint: str  # logical name, e.g. "admin/getLinks"
    path: str      # normalized request path

    @property
    def via_api(self) -> bool:
        return self.kind == RouteKind.API


def classify(path: str) -> Route | None:
    """Map a request path to a route, or None if it fits no shape."""
    normalized = path.split("?", 1)[0].strip("/")

    if normalized.startswith(API_PREFIX):
        name = normalized[len(API_PREFIX):]
        if _NAME.match(name):
            return Route(RouteKind.API, f"admin/{name}", normalized)
        return None

    if normalized.startswith("api/"):
        normalized = normalized[len("api/"):]

    area, _, name = normalized.partition("/")
    if not _NAME.match(name):
        return None
    if area == "public":
        return Route(RouteKind.PUBLIC, normalized, normalized)
    if area == "admin":
        return Route(RouteKind.ADMIN, normalized, normalized)
    return None


def handler_name(endpoint: str) -> str:
    """Display name for an endpoint's handler: admin/getLinks -> InvokeAdminGetLinks."""
    return "Invoke" + "".join(s[:1].upper() + s[1:] for s in endpoint.split("/") if s)


class HandlerRegistry:
    """Endpoint name -> handler coroutine."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, endpoint: str, handler: Handler) -> None:
        """
        Register a handler.

        Raises:
            RegistryError: Malformed endpoint name or duplicate registration
        """
        route = classify(endpoint)
        if route is None or route.kind == RouteKind.API or route.endpoint != endpoint:
            raise RegistryError(f"Handlers must be registered as public/<name> or admin/<name>: {endpoint}")
        if endpoint in self._handlers:
            raise RegistryError(f"Handler already registered for {endpoint}")
        self._handlers[endpoint] = handler

    def route(self, endpoint: str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""
        def decorator(handler: Handler) -> Handler:
            self.register(endpoint, handler)
            return handler
        return decorator

    def resolve(self, endpoint: str) -> Handler | None:
        return self._handlers.get(endpoint)

    def endpoints(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._handlers

    def validate(self, table: EndpointPermissions) -> None:
        """
        Fail fast if a permission-mapped endpoint has no handler.

        Admin handlers without a table entry are allowed (they are
        always denied) but logged.

        Raises:
            RegistryError: One or more mapped endpoints are unregistered
        """
        missing = [e for e in table.endpoints() if e not in self._handlers]
        if missing:
            raise RegistryError(f"No handler registered for endpoints: {missing}")

        for endpoint in self.endpoints():
            if endpoint.startswith("admin/") and endpoint not in table:
                logger.warning(f"{handler_name(endpoint)} has no permission entry and will always be denied")
