# =============================================================================
# Request Dispatcher
# =============================================================================
#
# Every request walks the same pipeline:
#
#   classify -> (suspicion) -> (authenticate) -> (rate limit)
#            -> (authorize) -> dispatch -> respond
#
#   public/<sensitive>  suspicion score -> suspicion-tiered IP limit -> handler
#   public/<other>      handler
#   api/v1/<name>       API key -> tiered limit -> permissions -> handler
#   admin/<name>        session cookie -> flat per-user limit -> permissions -> handler
#
# Any gate can end the request with an error response. Internal reasons
# go to the log and the audit sink; the client only gets a safe message
# (plus detail in development).
#
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import unquote

from linktome.auth.api_keys import ApiKeyService
from linktome.auth.jwt import TokenService
from linktome.auth.permissions import EndpointPermissions, authorize, get_endpoint_permissions
from linktome.auth.principal import Principal
from linktome.auth.roles import InvalidRoleError
from linktome.config import AuthConfig, BotPolicy
from linktome.gateway.http import (
    ErrorKind,
    HandlerError,
    HttpRequest,
    HttpResponse,
    RequestContext,
    error_response,
    json_response,
)
from linktome.gateway.routing import Handler, HandlerRegistry, Route, RouteKind, classify
from linktome.integrations.audit import SecurityAuditLog, SecurityEvent
from linktome.integrations.sentry import capture_exception
from linktome.ratelimit.limiter import RateLimiter, RateLimitResult
from linktome.ratelimit.suspicion import score_request

logger = logging.getLogger(__name__)

WWW_AUTHENTICATE = 'Bearer realm="linktome", error="invalid_token"'

CONTEXT_USER_PARAM = "userId"
CONTEXT_COMPANY_PARAM = "companyId"


class Dispatcher:
    """Runs the auth / rate-limit / permission gates and invokes handlers."""

    def __init__(
        self,
        config: AuthConfig,
        registry: HandlerRegistry,
        tokens: TokenService,
        api_keys: ApiKeyService,
        limiter: RateLimiter,
        audit: SecurityAuditLog,
        endpoint_permissions: EndpointPermissions | None = None,
    ):
        self.config = config
        self.registry = registry
        self.tokens = tokens
        self.api_keys = api_keys
        self.limiter = limiter
        self.audit = audit
        self.endpoint_permissions = endpoint_permissions or get_endpoint_permissions()

    async def dispatch(self, request: HttpRequest) -> HttpResponse:
        """Handle one request. Never raises."""
        route = classify(request.path)
        handler = self.registry.resolve(route.endpoint) if route else None
        if route is None or handler is None:
            return self._error(ErrorKind.NOT_FOUND, "Endpoint not found", detail=request.path)

        try:
            if route.kind == RouteKind.PUBLIC:
                return await self._public(route, handler, request)
            if route.kind == RouteKind.API:
                return await self._api(route, handler, request)
            return await self._admin(route, handler, request)
        except Exception as e:
            return self._unexpected(e, route, request)

    # =========================================================================
    # Public routes
    # =========================================================================

    async def _public(self, route: Route, handler: Handler, request: HttpRequest) -> HttpResponse:
        if route.endpoint in self.config.sensitive_public_endpoints:
            ip = request.client_ip or "unknown"
            report = score_request(
                request.headers,
                allowed_origins=self.config.allowed_origins,
                bot_threshold=self.config.bot_score_threshold,
            )
            if report.is_likely_bot:
                self.audit.emit(
                    SecurityEvent.BOT_DETECTED, ip=ip, endpoint=route.endpoint,
                    metadata={"score": report.score, "reasons": list(report.reasons),
                              "policy": self.config.bot_policy.value},
                )
                if self.config.bot_policy == BotPolicy.REJECT:
                    logger.warning(f"Rejected likely bot on {route.endpoint} (score {report.score})")
                    return self._error(ErrorKind.BAD_REQUEST, "Request blocked", detail=list(report.reasons))

            limit = await self.limiter.check_auth_endpoint(ip, route.endpoint, report)
            if not limit.allowed:
                self.audit.emit(
                    SecurityEvent.RATE_LIMITED, ip=ip, endpoint=route.endpoint,
                    metadata={"score": report.score},
                )
                return self._rate_limited(limit)

        return await self._invoke(handler, RequestContext(request=request, endpoint=route.endpoint))

    # =========================================================================
    # API-key routes
    # =========================================================================

    async def _api(self, route: Route, handler: Handler, request: HttpRequest) -> HttpResponse:
        ip = request.client_ip
        try:
            resolution = await self.api_keys.resolve(request.headers, ip=ip)
        except InvalidRoleError as e:
            return self._invalid_role(e, route, request)

        if not resolution.valid:
            self.audit.emit(
                SecurityEvent.API_KEY_INVALID, user_id=resolution.owner_user_id, ip=ip,
                endpoint=route.endpoint,
                metadata={"reason": resolution.error, "key_id": resolution.key_id},
            )
            message = "Invalid or missing API key"
            if resolution.disabled_reason:
                message = f"API key is disabled: {resolution.disabled_reason}"
            return self._error(
                ErrorKind.INVALID_CREDENTIAL, message, detail=resolution.error,
                headers={"WWW-Authenticate": WWW_AUTHENTICATE},
            )

        principal = resolution.to_principal()

        limit = await self.limiter.check_api_request(
            resolution.key_id, principal.user_id, principal.tier
        )
        if not limit.allowed:
            self.audit.emit(
                SecurityEvent.RATE_LIMITED, user_id=principal.user_id, ip=ip, endpoint=route.endpoint,
                metadata={"key_id": resolution.key_id},
            )
            return self._error(
                ErrorKind.RATE_LIMITED, "Rate limit exceeded",
                headers={"Retry-After": str(limit.retry_after), **limit.headers()},
            )

        denied = self._authorize(route, principal, request)
        if denied:
            return denied

        response = await self._invoke(handler, self._context(route, principal, request))
        if response.ok:
            response.headers.update(limit.headers())
        return response

    # =========================================================================
    # Session routes
    # =========================================================================

    async def _admin(self, route: Route, handler: Handler, request: HttpRequest) -> HttpResponse:
        ip = request.client_ip
        token = self.session_token(request)
        if not token:
            self.audit.emit(
                SecurityEvent.TOKEN_INVALID, ip=ip, endpoint=route.endpoint,
                metadata={"reason": "Missing session"},
            )
            return self._error(ErrorKind.INVALID_CREDENTIAL, "Authentication required", detail="Missing session")

        validation = self.tokens.validate(token, ip=ip)
        if not validation.valid:
            return self._error(
                ErrorKind.INVALID_CREDENTIAL, "Invalid or expired session", detail=validation.reason
            )
        principal = validation.principal

        limit = await self.limiter.check_admin(principal.user_id)
        if not limit.allowed:
            self.audit.emit(
                SecurityEvent.RATE_LIMITED, user_id=principal.user_id, ip=ip, endpoint=route.endpoint,
            )
            return self._rate_limited(limit)

        denied = self._authorize(route, principal, request)
        if denied:
            return denied

        return await self._invoke(handler, self._context(route, principal, request))

    def session_token(self, request: HttpRequest) -> str | None:
        """Access token from the auth cookie (a JSON blob holding accessToken)."""
        raw = request.cookies.get(self.config.auth_cookie_name)
        if not raw:
            return None
        try:
            data = json.loads(unquote(raw))
        except ValueError:
            logger.warning("Auth cookie is not valid JSON")
            return None
        if not isinstance(data, dict):
            return None
        token = data.get("accessToken")
        return token if isinstance(token, str) and token else None

    # =========================================================================
    # Authorization
    # =========================================================================

    def _authorize(self, route: Route, principal: Principal, request: HttpRequest) -> HttpResponse | None:
        """Permission gate. Returns an error response on denial, else None."""
        required = self.endpoint_permissions.get_required_permissions(route.endpoint, via_api=route.via_api)
        if required is None:
            self.audit.emit(
                SecurityEvent.PERMISSION_DENIED, user_id=principal.user_id, ip=request.client_ip,
                endpoint=route.endpoint, metadata={"reason": "endpoint not permission-mapped"},
            )
            logger.warning(f"Denied unmapped endpoint {route.endpoint} for {principal.user_id}")
            return self._error(ErrorKind.FORBIDDEN, "Forbidden", detail="Endpoint is not permission-mapped")

        decision = authorize(
            principal,
            required,
            context_user_id=request.query.get(CONTEXT_USER_PARAM),
            context_company_id=request.query.get(CONTEXT_COMPANY_PARAM),
        )
        if not decision.allowed:
            self.audit.emit(
                SecurityEvent.PERMISSION_DENIED, user_id=principal.user_id, ip=request.client_ip,
                endpoint=route.endpoint,
                metadata={"reason": decision.reason, "scope": decision.scope.value,
                          "auth_mode": principal.auth_mode.value},
            )
            logger.warning(f"Permission denied on {route.endpoint} for {principal.user_id}: {decision.reason}")
            return self._error(ErrorKind.FORBIDDEN, "Forbidden", detail=decision.reason)
        return None

    @staticmethod
    def _context(route: Route, principal: Principal, request: HttpRequest) -> RequestContext:
        return RequestContext(
            request=request,
            endpoint=route.endpoint,
            principal=principal,
            context_user_id=request.query.get(CONTEXT_USER_PARAM) or None,
            context_company_id=request.query.get(CONTEXT_COMPANY_PARAM) or None,
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _invoke(self, handler: Handler, ctx: RequestContext) -> HttpResponse:
        try:
            result = await handler(ctx)
        except HandlerError as e:
            return error_response(
                ErrorKind.BAD_REQUEST, e.message,
                expose_detail=self.config.expose_error_detail,
                status_code=e.status_code, code=e.code,
            )
        except InvalidRoleError as e:
            return self._invalid_role(e, None, ctx.request, endpoint=ctx.endpoint)

        if isinstance(result, HttpResponse):
            return result
        return json_response(result)

    # =========================================================================
    # Error responses
    # =========================================================================

    def _error(
        self,
        kind: ErrorKind,
        message: str,
        detail: Any = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        return error_response(
            kind, message,
            expose_detail=self.config.expose_error_detail,
            detail=detail,
            headers=headers,
        )

    def _rate_limited(self, limit: RateLimitResult) -> HttpResponse:
        return self._error(
            ErrorKind.RATE_LIMITED, "Too many requests",
            headers={"Retry-After": str(limit.retry_after)},
        )

    def _invalid_role(
        self,
        error: InvalidRoleError,
        route: Route | None,
        request: HttpRequest,
        endpoint: str | None = None,
    ) -> HttpResponse:
        endpoint = endpoint or (route.endpoint if route else None)
        logger.error(f"Role allow-list violation on {endpoint}: {error}")
        self.audit.emit(
            SecurityEvent.INVALID_ROLE, ip=request.client_ip, endpoint=endpoint,
            metadata={"reason": str(error)},
        )
        return self._error(ErrorKind.FORBIDDEN, "Forbidden", detail=str(error))

    def _unexpected(self, error: Exception, route: Route, request: HttpRequest) -> HttpResponse:
        capture_exception(error, endpoint=route.endpoint, method=request.method)
        return self._error(ErrorKind.UNEXPECTED, "Internal server error", detail=repr(error))
