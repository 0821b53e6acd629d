# =============================================================================
# Public Auth Handlers
# =============================================================================
#
# Endpoints:
#   public/signup   - Create account, returns tokens
#   public/login    - Get tokens
#   public/refresh  - Rotate refresh token, returns new tokens
#   public/logout   - Invalidate refresh token
#
# The dispatcher has already scored these requests for suspicion and
# applied the per-IP rate limit before they get here.
#
# Tokens are returned in the body and in the auth cookie, a JSON blob
# {"accessToken": ..., "refreshToken": ...}.
#
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

from pydantic import BaseModel, EmailStr, Field

from linktome.auth.passwords import hash_password, needs_rehash, verify_password
from linktome.gateway.http import HandlerError, HttpResponse, RequestContext, json_response
from linktome.gateway.routing import HandlerRegistry
from linktome.handlers import parse_body
from linktome.integrations.audit import SecurityEvent

if TYPE_CHECKING:
    from linktome.services import Services

logger = logging.getLogger(__name__)


# =============================================================================
# Request Models
# =============================================================================


class SignupRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=8, max_length=256)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    refreshToken: str | None = None


# =============================================================================
# Helpers
# =============================================================================


def user_summary(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": user["id"],
        "email": user.get("email"),
        "username": user.get("username"),
        "role": user.get("role"),
        "tier": user.get("tier"),
        "isSubAccount": bool(user.get("is_sub_account")),
    }


def auth_cookie(services: Services, value: str, max_age: int) -> str:
    cookie = (
        f"{services.config.auth_cookie_name}={value}; "
        f"Max-Age={max_age}; Path=/; HttpOnly; SameSite=Strict"
    )
    if services.config.is_production:
        cookie += "; Secure"
    return cookie


def refresh_token_from(ctx: RequestContext, services: Services) -> str | None:
    """Refresh token from the body, else from the auth cookie."""
    body = parse_body(ctx, RefreshRequest)
    if body.refreshToken:
        return body.refreshToken
    raw = ctx.request.cookies.get(services.config.auth_cookie_name)
    if not raw:
        return None
    try:
        data = json.loads(unquote(raw))
    except ValueError:
        return None
    return data.get("refreshToken") if isinstance(data, dict) else None


async def issue_session(
    services: Services,
    user: dict[str, Any],
    status_code: int = 200,
    refresh: dict[str, Any] | None = None,
) -> HttpResponse:
    """Access + refresh token for a user, in the body and the auth cookie."""
    identity = await services.credentials.load_identity(user)
    access_token = services.tokens.issue_for(identity)
    if refresh is None:
        refresh = await services.refresh_tokens.issue(user["id"])

    cookie_value = quote(json.dumps({
        "accessToken": access_token,
        "refreshToken": refresh["token"],
    }, separators=(",", ":")))

    return json_response(
        {
            "user": user_summary(user),
            "accessToken": access_token,
            "refreshToken": refresh["token"],
            "expiresIn": services.config.access_token_ttl_seconds,
        },
        status_code=status_code,
        headers={"Set-Cookie": auth_cookie(services, cookie_value, services.config.refresh_token_ttl_seconds)},
    )


# =============================================================================
# Handlers
# =============================================================================


def register(registry: HandlerRegistry, services: Services) -> None:
    audit = services.audit
    credentials = services.credentials

    @registry.route("public/signup")
    async def signup(ctx: RequestContext) -> HttpResponse:
        data = parse_body(ctx, SignupRequest)
        try:
            user = await credentials.create_user(
                email=data.email,
                username=data.username,
                password_hash=hash_password(data.password),
            )
        except ValueError as e:
            raise HandlerError(409, str(e))

        audit.emit(SecurityEvent.SIGNUP, user_id=user["id"], email=user["email"],
                   ip=ctx.request.client_ip, endpoint=ctx.endpoint)
        logger.info(f"New account {user['id']}")
        return await issue_session(services, user, status_code=201)

    @registry.route("public/login")
    async def login(ctx: RequestContext) -> HttpResponse:
        data = parse_body(ctx, LoginRequest)
        ip = ctx.request.client_ip

        user = await credentials.get_user_by_email(data.email)
        if not user or not verify_password(data.password, user.get("password_hash", "")):
            audit.emit(SecurityEvent.LOGIN_FAILED, user_id=user["id"] if user else None,
                       email=data.email, ip=ip, endpoint=ctx.endpoint,
                       metadata={"reason": "bad credentials"})
            raise HandlerError(401, "Invalid email or password")

        if not user.get("is_active", True):
            audit.emit(SecurityEvent.LOGIN_FAILED, user_id=user["id"], email=data.email,
                       ip=ip, endpoint=ctx.endpoint, metadata={"reason": "account disabled"})
            raise HandlerError(403, "Account is disabled")

        if needs_rehash(user["password_hash"]):
            await credentials.set_password_hash(user["id"], hash_password(data.password))
            logger.info(f"Upgraded password hash for {user['id']}")

        audit.emit(SecurityEvent.LOGIN_SUCCESS, user_id=user["id"], email=data.email,
                   ip=ip, endpoint=ctx.endpoint)
        return await issue_session(services, user)

    @registry.route("public/refresh")
    async def refresh(ctx: RequestContext) -> HttpResponse:
        ip = ctx.request.client_ip
        token = refresh_token_from(ctx, services)

        check = await services.refresh_tokens.validate(token)
        user = await credentials.get_user(check.owner_user_id) if check.valid else None
        if not check.valid or not user or not user.get("is_active", True):
            reason = check.reason or "account unavailable"
            audit.emit(SecurityEvent.REFRESH_FAILED, user_id=check.owner_user_id, ip=ip,
                       endpoint=ctx.endpoint, metadata={"reason": reason})
            raise HandlerError(401, "Invalid or expired refresh token")

        rotation, rotated = await services.refresh_tokens.rotate(token)
        if rotated is None:
            audit.emit(SecurityEvent.REFRESH_FAILED, user_id=user["id"], ip=ip,
                       endpoint=ctx.endpoint, metadata={"reason": rotation.reason})
            raise HandlerError(401, "Invalid or expired refresh token")
        return await issue_session(services, user, refresh=rotated)

    @registry.route("public/logout")
    async def logout(ctx: RequestContext) -> HttpResponse:
        token = refresh_token_from(ctx, services)
        if token:
            check = await services.refresh_tokens.validate(token)
            await services.refresh_tokens.invalidate(token)
            audit.emit(SecurityEvent.LOGOUT, user_id=check.owner_user_id,
                       ip=ctx.request.client_ip, endpoint=ctx.endpoint)
        return json_response(
            {"message": "Logged out"},
            headers={"Set-Cookie": auth_cookie(services, "", 0)},
        )
