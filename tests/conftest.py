"""Shared fixtures for the linktome tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import pytest

from linktome.auth.passwords import hash_password
from linktome.config import AuthConfig
from linktome.gateway.http import HttpRequest
from linktome.services import Services, create_dispatcher, create_services
from linktome.storage import InMemoryTableStorage, StorageError

SIGNING_KEY = "test-signing-key-" + "k" * 64
APP_ORIGIN = "https://app.linktome.test"
PASSWORD = "correct horse battery staple"

# One hash for every test user; PBKDF2 is deliberately slow
PASSWORD_HASH = hash_password(PASSWORD)


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FailingStorage(InMemoryTableStorage):
    """Storage whose selected operations raise StorageError."""

    def __init__(self, fail_on: set[str] | None = None):
        super().__init__()
        self.fail_on = fail_on or set()

    async def get(self, table, id):
        if "get" in self.fail_on:
            raise StorageError("store unreachable")
        return await super().get(table, id)

    async def save(self, table, id, data):
        if "save" in self.fail_on:
            raise StorageError("store unreachable")
        return await super().save(table, id, data)

    async def update(self, table, id, updates):
        if "update" in self.fail_on:
            raise StorageError("store unreachable")
        return await super().update(table, id, updates)


def browser_headers(**overrides: str) -> dict[str, str]:
    """Headers a real browser sends when the app calls an auth endpoint."""
    headers = {
        "sec-fetch-site": "same-origin",
        "sec-fetch-mode": "cors",
        "sec-fetch-dest": "empty",
        "origin": APP_ORIGIN,
        "referer": f"{APP_ORIGIN}/login",
        "user-agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Safari/605.1.15",
        "accept-language": "en-US,en;q=0.9",
        "accept-encoding": "gzip, deflate, br",
        "content-type": "application/json",
    }
    headers.update(overrides)
    return headers


async def make_user(
    services: Services,
    email: str,
    username: str,
    role: str = "user",
    tier: str = "free",
    is_user_manager: bool = False,
) -> dict[str, Any]:
    return await services.credentials.create_user(
        email=email,
        username=username,
        password_hash=PASSWORD_HASH,
        role=role,
        tier=tier,
        is_user_manager=is_user_manager,
    )


def http_request(
    path: str,
    body: Any = None,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    query: dict[str, str] | None = None,
    cookies: dict[str, str] | None = None,
    ip: str = "198.51.100.7",
) -> HttpRequest:
    return HttpRequest(
        method=method,
        path=path,
        headers=headers or {},
        query=query or {},
        cookies=cookies or {},
        body=body,
        client_ip=ip,
    )


async def session_cookies(services: Services, user: dict[str, Any]) -> dict[str, str]:
    """Auth cookie carrying a fresh access token for a stored user."""
    identity = await services.credentials.load_identity(user)
    token = services.tokens.issue_for(identity)
    value = quote(json.dumps({"accessToken": token}))
    return {services.config.auth_cookie_name: value}


def cookie_value(set_cookie: str) -> str:
    """The value part of a Set-Cookie header."""
    return set_cookie.split(";", 1)[0].split("=", 1)[1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return AuthConfig(
        signing_key=SIGNING_KEY,
        environment="test",
        allowed_origins=(APP_ORIGIN,),
    )


@pytest.fixture
def storage():
    return InMemoryTableStorage()


@pytest.fixture
def services(config, storage, clock):
    return create_services(config, storage, clock=clock)


@pytest.fixture
def dispatcher(services):
    return create_dispatcher(services)


@pytest.fixture
async def alice(services):
    """A plain user on the free tier."""
    return await make_user(services, "alice@example.com", "alice")
