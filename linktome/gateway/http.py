"""
HTTP-shaped request and response objects.

The dispatcher speaks only in these, so the whole pipeline can be
driven without a web server. api/app.py converts to and from FastAPI.

Error bodies depend on environment:
    production   {"error": "<safe message>"}
    development  {"error": {"code": ..., "message": ..., "detail": ...}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from linktome.auth.principal import Principal


class ErrorKind(str, Enum):
    """Failure taxonomy of the request pipeline."""

    BAD_REQUEST = "bad_request"
    INVALID_CREDENTIAL = "invalid_credential"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    UNEXPECTED = "unexpected"


STATUS_CODES: Mapping[ErrorKind, int] = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.INVALID_CREDENTIAL: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UNEXPECTED: 500,
}


def kind_for_status(status_code: int) -> ErrorKind:
    for kind, code in STATUS_CODES.items():
        if code == status_code:
            return kind
    return ErrorKind.UNEXPECTED if status_code >= 500 else ErrorKind.BAD_REQUEST


# =============================================================================
# Request / Response
# =============================================================================


@dataclass
class HttpRequest:
    """An inbound request. Header names are lowercased on construction."""

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    body: Any = None
    client_ip: str | None = None

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def json(self) -> dict[str, Any]:
        """Body as a JSON object; empty dict when absent."""
        if self.body is None or self.body == b"" or self.body == "":
            return {}
        if isinstance(self.body, (bytes, str)):
            data = json.loads(self.body)
        else:
            data = self.body
        if not isinstance(data, dict):
            raise HandlerError(400, "Request body must be a JSON object")
        return data


@dataclass
class HttpResponse:
    """{statusCode, headers, body}"""

    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class HandlerError(Exception):
    """
    An expected request problem raised by a handler.

    The dispatcher turns it into an error response with this status
    and message.
    """

    def __init__(self, status_code: int, message: str, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code or kind_for_status(status_code).value


@dataclass(frozen=True)
class RequestContext:
    """What a handler receives: the request plus who is calling and on whose behalf."""

    request: HttpRequest
    endpoint: str
    principal: Principal | None = None
    context_user_id: str | None = None
    context_company_id: str | None = None

    @property
    def target_user_id(self) -> str | None:
        """
        The user whose data the request acts on.

        None in a company context: company requests act on the company,
        never on the caller's own account.
        """
        if self.context_company_id:
            return None
        if self.context_user_id:
            return self.context_user_id
        return self.principal.user_id if self.principal else None

    def require_target_user(self) -> str:
        user_id = self.target_user_id
        if user_id is None:
            raise HandlerError(400, "This endpoint acts on a user account, not a company")
        return user_id

    def require_principal(self) -> Principal:
        if self.principal is None:
            raise HandlerError(401, "Authentication required")
        return self.principal


# =============================================================================
# Builders
# =============================================================================


def json_response(body: Any, status_code: int = 200, headers: Mapping[str, str] | None = None) -> HttpResponse:
    return HttpResponse(status_code=status_code, body=body, headers=dict(headers or {}))


def error_response(
    kind: ErrorKind,
    message: str,
    expose_detail: bool = False,
    detail: Any = None,
    headers: Mapping[str, str] | None = None,
    status_code: int | None = None,
    code: str | None = None,
) -> HttpResponse:
    """Build an error response that never leaks detail outside development."""
    status_code = status_code or STATUS_CODES[kind]
    if expose_detail:
        error: Any = {
            "code": code or kind.value,
            "message": message,
            "detail": detail,
        }
    else:
        error = message
    return HttpResponse(status_code=status_code, body={"error": error}, headers=dict(headers or {}))
