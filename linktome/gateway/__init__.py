"""
Request gateway: HTTP-shaped objects, routing and the dispatcher.
"""

from linktome.gateway.http import (
    ErrorKind,
    HandlerError,
    HttpRequest,
    HttpResponse,
    RequestContext,
    error_response,
    json_response,
)
from linktome.gateway.routing import HandlerRegistry, RegistryError, Route, RouteKind, classify
from linktome.gateway.dispatcher import Dispatcher

__all__ = [
    "ErrorKind",
    "HandlerError",
    "HttpRequest",
    "HttpResponse",
    "RequestContext",
    "error_response",
    "json_response",
    "HandlerRegistry",
    "RegistryError",
    "Route",
    "RouteKind",
    "classify",
    "Dispatcher",
]
