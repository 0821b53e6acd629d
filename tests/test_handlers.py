"""
Tests for the request handlers, driven through the dispatcher.
"""

import asyncio
import hashlib
import json
from urllib.parse import unquote

import pytest

from linktome.auth.api_keys import API_KEY_PATTERN
from linktome.auth.passwords import needs_rehash
from linktome.auth.refresh import RefreshValidation
from linktome.integrations.audit import SecurityEvent
from linktome.storage import Collections

from tests.conftest import (
    PASSWORD,
    browser_headers,
    cookie_value,
    http_request,
    make_user,
    session_cookies,
)


async def events(services, event_type):
    await services.tasks.drain()
    rows = await services.storage.query(Collections.SECURITY_EVENTS)
    return [r for r in rows if r["event_type"] == event_type.value]


def public(endpoint, body=None, cookies=None):
    return http_request(f"public/{endpoint}", body, headers=browser_headers(), cookies=cookies)


# =============================================================================
# Signup / login
# =============================================================================


class TestSignup:
    async def test_signup_issues_session(self, services, dispatcher):
        response = await dispatcher.dispatch(public("signup", {
            "email": "New.User@Example.com", "username": "newuser", "password": PASSWORD,
        }))

        assert response.status_code == 201
        assert response.body["user"]["email"] == "new.user@example.com"
        assert response.body["user"]["role"] == "user"
        assert response.body["expiresIn"] == services.config.access_token_ttl_seconds
        assert services.tokens.validate(response.body["accessToken"]).valid
        assert len(await events(services, SecurityEvent.SIGNUP)) == 1

        row = await services.credentials.get_user(response.body["user"]["id"])
        assert PASSWORD not in str(row)

    async def test_duplicate_email(self, dispatcher, alice):
        response = await dispatcher.dispatch(public("signup", {
            "email": "alice@example.com", "username": "alice2", "password": PASSWORD,
        }))
        assert response.status_code == 409

    @pytest.mark.parametrize("body", [
        {"email": "not-an-email", "username": "bob", "password": PASSWORD},
        {"email": "bob@example.com", "username": "b", "password": PASSWORD},
        {"email": "bob@example.com", "username": "bob", "password": "short"},
        {"email": "bob@example.com", "username": "bob smith", "password": PASSWORD},
    ])
    async def test_invalid_body(self, dispatcher, body):
        assert (await dispatcher.dispatch(public("signup", body))).status_code == 400


class TestLogin:
    async def test_cookie_holds_both_tokens(self, dispatcher, alice):
        response = await dispatcher.dispatch(public("login", {"email": "alice@example.com", "password": PASSWORD}))

        set_cookie = response.headers["Set-Cookie"]
        assert "HttpOnly" in set_cookie
        assert "SameSite=Strict" in set_cookie
        assert "Secure" not in set_cookie
        cookie = json.loads(unquote(cookie_value(set_cookie)))
        assert cookie == {
            "accessToken": response.body["accessToken"],
            "refreshToken": response.body["refreshToken"],
        }

    async def test_wrong_password(self, services, dispatcher, alice):
        response = await dispatcher.dispatch(public("login", {"email": "alice@example.com", "password": "nope-nope"}))

        assert response.status_code == 401
        assert response.body == {"error": "Invalid email or password"}
        failed = await events(services, SecurityEvent.LOGIN_FAILED)
        assert failed[0]["email"] == "ali***@example.com"

    async def test_unknown_email_same_message(self, dispatcher):
        response = await dispatcher.dispatch(public("login", {"email": "who@example.com", "password": PASSWORD}))
        assert response.body == {"error": "Invalid email or password"}

    async def test_disabled_account(self, services, dispatcher, alice):
        await services.credentials.set_user_active(alice["id"], False)
        response = await dispatcher.dispatch(public("login", {"email": "alice@example.com", "password": PASSWORD}))
        assert response.status_code == 403

    async def test_legacy_hash_upgraded_on_login(self, services, dispatcher, alice):
        salt = "cd" * 32
        digest = hashlib.pbkdf2_hmac("sha256", PASSWORD.encode(), salt.encode(), iterations=100_000)
        await services.credentials.set_password_hash(alice["id"], f"{salt}:{digest.hex()}")

        response = await dispatcher.dispatch(public("login", {"email": "alice@example.com", "password": PASSWORD}))

        assert response.status_code == 200
        stored = (await services.credentials.get_user(alice["id"]))["password_hash"]
        assert stored.startswith("pbkdf2_sha256$")
        assert not needs_rehash(stored)


# =============================================================================
# Refresh / logout
# =============================================================================


class TestRefresh:
    async def login(self, dispatcher):
        return await dispatcher.dispatch(public("login", {"email": "alice@example.com", "password": PASSWORD}))

    async def test_rotation(self, dispatcher, alice):
        first = await self.login(dispatcher)
        old = first.body["refreshToken"]

        rotated = await dispatcher.dispatch(public("refresh", {"refreshToken": old}))
        assert rotated.status_code == 200
        assert rotated.body["refreshToken"] != old

        replay = await dispatcher.dispatch(public("refresh", {"refreshToken": old}))
        assert replay.status_code == 401

    async def test_concurrent_refresh_with_same_token(self, services, dispatcher, alice):
        first = await self.login(dispatcher)
        body = {"refreshToken": first.body["refreshToken"]}

        responses = await asyncio.gather(
            dispatcher.dispatch(public("refresh", body)),
            dispatcher.dispatch(public("refresh", body)),
        )

        assert sorted(r.status_code for r in responses) == [200, 401]
        assert len(await events(services, SecurityEvent.REFRESH_FAILED)) == 1

    async def test_lost_rotation_issues_no_session(self, services, dispatcher, alice, monkeypatch):
        first = await self.login(dispatcher)
        token = first.body["refreshToken"]

        async def lost_rotation(presented):
            await services.refresh_tokens.invalidate(presented)
            return RefreshValidation(valid=False, reason="Refresh token has been invalidated"), None

        monkeypatch.setattr(services.refresh_tokens, "rotate", lost_rotation)
        before = services.storage.count(Collections.REFRESH_TOKENS)

        response = await dispatcher.dispatch(public("refresh", {"refreshToken": token}))

        assert response.status_code == 401
        assert "refreshToken" not in response.body
        assert services.storage.count(Collections.REFRESH_TOKENS) == before

    async def test_refresh_from_cookie(self, dispatcher, alice):
        first = await self.login(dispatcher)
        cookies = {"auth": cookie_value(first.headers["Set-Cookie"])}

        response = await dispatcher.dispatch(public("refresh", cookies=cookies))
        assert response.status_code == 200

    async def test_disabled_user_cannot_refresh(self, services, dispatcher, alice):
        first = await self.login(dispatcher)
        await services.credentials.set_user_active(alice["id"], False)

        response = await dispatcher.dispatch(public("refresh", {"refreshToken": first.body["refreshToken"]}))
        assert response.status_code == 401
        assert len(await events(services, SecurityEvent.REFRESH_FAILED)) == 1

    async def test_logout_invalidates_and_clears_cookie(self, services, dispatcher, alice):
        first = await self.login(dispatcher)
        token = first.body["refreshToken"]

        response = await dispatcher.dispatch(http_request("public/logout", {"refreshToken": token}))
        assert response.status_code == 200
        assert "Max-Age=0" in response.headers["Set-Cookie"]
        assert not (await services.refresh_tokens.validate(token)).valid
        assert len(await events(services, SecurityEvent.LOGOUT)) == 1


# =============================================================================
# API key management
# =============================================================================


class TestApiKeyHandlers:
    async def test_create_list_update_delete(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)

        created = await dispatcher.dispatch(http_request(
            "admin/createApiKey", {"name": "ci", "permissions": ["read:links"]}, cookies=cookies,
        ))
        assert created.status_code == 201
        assert API_KEY_PATTERN.match(created.body["key"])
        key_id = created.body["key_id"]

        listed = await dispatcher.dispatch(http_request("admin/listApiKeys", method="GET", cookies=cookies))
        assert [k["key_id"] for k in listed.body["keys"]] == [key_id]
        assert "key" not in listed.body["keys"][0]
        assert "secret_hash" not in listed.body["keys"][0]

        updated = await dispatcher.dispatch(http_request(
            "admin/updateApiKey", {"keyId": key_id, "permissions": ["read:profile"]}, cookies=cookies,
        ))
        assert updated.body["permissions"] == ["read:profile"]

        deleted = await dispatcher.dispatch(http_request("admin/deleteApiKey", {"keyId": key_id}, cookies=cookies))
        assert deleted.body == {"deleted": key_id}
        assert len(await events(services, SecurityEvent.API_KEY_DELETED)) == 1

    async def test_free_tier_key_cap(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        body = {"name": "ci"}

        assert (await dispatcher.dispatch(http_request("admin/createApiKey", body, cookies=cookies))).status_code == 201
        second = await dispatcher.dispatch(http_request("admin/createApiKey", body, cookies=cookies))

        assert second.status_code == 403
        assert second.body == {"error": "Your plan allows 1 active API keys"}

    async def test_permissions_beyond_role(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        response = await dispatcher.dispatch(http_request(
            "admin/createApiKey", {"name": "ci", "permissions": ["admin:platform"]}, cookies=cookies,
        ))
        assert response.status_code == 400

    async def test_other_users_key_not_found(self, services, dispatcher, alice):
        other = await make_user(services, "o@example.com", "other")
        issued = await services.api_keys.issue(other["id"], "theirs", [])
        cookies = await session_cookies(services, alice)

        response = await dispatcher.dispatch(http_request("admin/deleteApiKey", {"keyId": issued.key_id}, cookies=cookies))
        assert response.status_code == 404


# =============================================================================
# Delegation
# =============================================================================


class TestManagementHandlers:
    async def test_request_accept_list(self, services, dispatcher, alice):
        agency = await make_user(services, "agency@example.com", "agency", role="user_manager", is_user_manager=True)
        agency_cookies = await session_cookies(services, agency)
        alice_cookies = await session_cookies(services, alice)

        requested = await dispatcher.dispatch(http_request(
            "admin/requestManagement", {"userId": alice["id"], "role": "viewer"}, cookies=agency_cookies,
        ))
        assert requested.status_code == 201
        assert requested.body["state"] == "pending"

        accepted = await dispatcher.dispatch(http_request(
            "admin/respondToManagement", {"managerUserId": agency["id"], "accept": True}, cookies=alice_cookies,
        ))
        assert accepted.body["state"] == "accepted"

        listed = await dispatcher.dispatch(http_request("admin/listManagement", method="GET", cookies=alice_cookies))
        assert [e["managerUserId"] for e in listed.body["managedBy"]] == [agency["id"]]
        assert listed.body["managing"] == []

    async def test_plain_user_cannot_request_management(self, services, dispatcher, alice):
        other = await make_user(services, "o@example.com", "other")
        cookies = await session_cookies(services, alice)

        response = await dispatcher.dispatch(http_request(
            "admin/requestManagement", {"userId": other["id"]}, cookies=cookies,
        ))
        assert response.status_code == 403

    async def test_only_delegate_roles(self, services, dispatcher, alice):
        agency = await make_user(services, "agency@example.com", "agency", role="user_manager", is_user_manager=True)
        cookies = await session_cookies(services, agency)

        response = await dispatcher.dispatch(http_request(
            "admin/requestManagement", {"userId": alice["id"], "role": "admin"}, cookies=cookies,
        ))
        assert response.status_code == 400

    async def test_respond_without_pending_request(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        response = await dispatcher.dispatch(http_request(
            "admin/respondToManagement", {"managerUserId": "user_nobody", "accept": True}, cookies=cookies,
        ))
        assert response.status_code == 404

    async def test_unknown_state_filter(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        response = await dispatcher.dispatch(http_request(
            "admin/listManagement", method="GET", cookies=cookies, query={"state": "maybe"},
        ))
        assert response.status_code == 400


# =============================================================================
# Profile and links
# =============================================================================


class TestProfile:
    async def test_update_then_get(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)

        updated = await dispatcher.dispatch(http_request(
            "admin/updateProfile", {"displayName": "Alice", "avatarUrl": "https://cdn.example/a.png"},
            cookies=cookies,
        ))
        assert updated.status_code == 200

        profile = await dispatcher.dispatch(http_request("admin/getProfile", method="GET", cookies=cookies))
        assert profile.body["displayName"] == "Alice"
        assert profile.body["avatarUrl"] == "https://cdn.example/a.png"
        assert profile.body["bio"] is None

    async def test_partial_update_keeps_other_fields(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        await dispatcher.dispatch(http_request("admin/updateProfile", {"displayName": "Alice"}, cookies=cookies))
        await dispatcher.dispatch(http_request("admin/updateProfile", {"bio": "hi"}, cookies=cookies))

        profile = await dispatcher.dispatch(http_request("admin/getProfile", method="GET", cookies=cookies))
        assert profile.body["displayName"] == "Alice"
        assert profile.body["bio"] == "hi"

    async def test_links_are_ordered(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        response = await dispatcher.dispatch(http_request("admin/updateLinks", {"links": [
            {"title": "Blog", "url": "https://blog.example/"},
            {"title": "Shop", "url": "https://shop.example/", "active": False},
        ]}, cookies=cookies))

        assert [(l["title"], l["order"]) for l in response.body["links"]] == [("Blog", 0), ("Shop", 1)]

    async def test_invalid_link_url(self, services, dispatcher, alice):
        cookies = await session_cookies(services, alice)
        response = await dispatcher.dispatch(http_request(
            "admin/updateLinks", {"links": [{"title": "x", "url": "javascript:alert(1)"}]}, cookies=cookies,
        ))
        assert response.status_code == 400
