"""
Service wiring.

Builds every service from one AuthConfig and one storage backend, and
assembles the dispatcher with all handlers registered. The FastAPI
app, the maintenance commands and the tests all start here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from linktome.auth.api_keys import ApiKeyService
from linktome.auth.credentials import CredentialStore
from linktome.auth.jwt import TokenService
from linktome.auth.permissions import EndpointPermissions, get_endpoint_permissions
from linktome.auth.refresh import RefreshTokenStore
from linktome.config import AuthConfig
from linktome.core.tasks import BackgroundTasks
from linktome.core.utils import Clock, utc_now
from linktome.gateway.dispatcher import Dispatcher
from linktome.gateway.routing import HandlerRegistry
from linktome.integrations.audit import SecurityAuditLog
from linktome.ratelimit.limiter import RateLimiter
from linktome.storage import TableStorage, create_local_storage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a handler or maintenance job may need."""

    config: AuthConfig
    storage: TableStorage
    tasks: BackgroundTasks
    audit: SecurityAuditLog
    credentials: CredentialStore
    tokens: TokenService
    refresh_tokens: RefreshTokenStore
    api_keys: ApiKeyService
    limiter: RateLimiter
    clock: Clock = utc_now


def create_services(
    config: AuthConfig,
    storage: TableStorage | None = None,
    clock: Clock = utc_now,
) -> Services:
    storage = storage or create_local_storage()
    tasks = BackgroundTasks()
    audit = SecurityAuditLog(storage, tasks=tasks, clock=clock)
    credentials = CredentialStore(storage, clock=clock)
    return Services(
        config=config,
        storage=storage,
        tasks=tasks,
        audit=audit,
        credentials=credentials,
        tokens=TokenService(config, audit=audit, clock=clock),
        refresh_tokens=RefreshTokenStore(storage, config, clock=clock),
        api_keys=ApiKeyService(storage, credentials, tasks=tasks, clock=clock),
        limiter=RateLimiter(storage, config, clock=clock),
        clock=clock,
    )


def create_registry(services: Services) -> HandlerRegistry:
    """Registry with every handler module registered."""
    from linktome.handlers import register_all

    registry = HandlerRegistry()
    register_all(registry, services)
    return registry


def create_dispatcher(
    services: Services,
    endpoint_permissions: EndpointPermissions | None = None,
) -> Dispatcher:
    """
    Build the dispatcher and validate routing against the endpoint table.

    Raises:
        RegistryError: A permission-mapped endpoint has no handler
    """
    endpoint_permissions = endpoint_permissions or get_endpoint_permissions()
    registry = create_registry(services)
    registry.validate(endpoint_permissions)
    logger.info(f"Registered {len(registry.endpoints())} handlers")
    return Dispatcher(
        config=services.config,
        registry=registry,
        tokens=services.tokens,
        api_keys=services.api_keys,
        limiter=services.limiter,
        audit=services.audit,
        endpoint_permissions=endpoint_permissions,
    )
