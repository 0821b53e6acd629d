"""
FastAPI application for the linktome backend.

Every /api/* request is handed to the dispatcher, which runs the
authentication, rate-limit and permission gates before any handler.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from linktome.config import AuthConfig, Settings, get_settings
from linktome.gateway.dispatcher import Dispatcher
from linktome.gateway.http import HttpRequest, HttpResponse
from linktome.integrations.sentry import init_sentry
from linktome.services import Services, create_dispatcher, create_services
from linktome.storage import TableStorage

logger = logging.getLogger(__name__)

GATEWAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


# =============================================================================
# App State
# =============================================================================


class AppState:
    """Application state - initialized at startup."""

    services: Services
    dispatcher: Dispatcher


# =============================================================================
# Request / Response conversion
# =============================================================================


async def to_http_request(request: Request, path: str) -> HttpRequest:
    return HttpRequest(
        method=request.method,
        path=f"api/{path}",
        headers=dict(request.headers),
        query=dict(request.query_params),
        cookies=dict(request.cookies),
        body=await request.body(),
        client_ip=request.client.host if request.client else None,
    )


def to_response(response: HttpResponse) -> Response:
    if response.body is None:
        return Response(status_code=response.status_code, headers=response.headers)
    return JSONResponse(
        content=response.body,
        status_code=response.status_code,
        headers=response.headers,
    )


# =============================================================================
# App Setup
# =============================================================================


def create_app(
    settings: Settings | None = None,
    config: AuthConfig | None = None,
    storage: TableStorage | None = None,
) -> FastAPI:
    """
    Build the API.

    config and storage default to the environment settings and local
    in-memory storage.
    """
    settings = settings or get_settings()
    state = AppState()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize and cleanup app resources."""
        init_sentry(settings)

        auth_config = config or AuthConfig.from_settings(settings)
        state.services = create_services(auth_config, storage)
        state.dispatcher = create_dispatcher(state.services)

        logger.info(f"linktome API starting in {auth_config.environment} mode")

        yield

        await state.services.tasks.drain()
        logger.info("linktome API shutting down")

    app = FastAPI(
        title="linktome API",
        description="Link-in-bio profiles: authentication, authorization and rate limiting gateway",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.linktome = state

    origins = list(config.allowed_origins) if config else settings.cors_origins_list
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-RateLimit-Limit-Day",
            "X-RateLimit-Remaining-Day",
        ],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.api_route("/api/{path:path}", methods=GATEWAY_METHODS)
    async def gateway(path: str, request: Request) -> Response:
        http_request = await to_http_request(request, path)
        return to_response(await state.dispatcher.dispatch(http_request))

    return app


app = create_app()
