"""Federated sign-in tests against a mocked provider transport."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi import FastAPI
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import auth_headers, create_user
from leornian.auth.oauth import GITHUB_EMAILS_URL, normalize_user_info
from leornian.auth.store import CredentialStore
from leornian.config import get_settings
from leornian.errors import UnsupportedProvider

GOOGLE_PROFILE = {
    "sub": "google-123",
    "email": "yvonne@example.com",
    "name": "Yvonne",
    "picture": "https://img.example.com/y.png",
    "email_verified": True,
}


class FakeProvider:
    """Answers token and user-info calls the way Google and GitHub do."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.google_profile = dict(GOOGLE_PROFILE)
        self.github_profile = {"id": 42, "login": "octo", "name": "Octo Cat", "email": None}
        self.token_status = 200
        self.token_body: str | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if request.method == "POST":
            if self.token_body is not None:
                return httpx.Response(self.token_status, text=self.token_body)
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access-token", "token_type": "bearer"})
        if url.startswith("https://www.googleapis.com/"):
            return httpx.Response(200, json=self.google_profile)
        if url == GITHUB_EMAILS_URL:
            return httpx.Response(
                200,
                json=[
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ],
            )
        if url.startswith("https://api.github.com/user"):
            return httpx.Response(200, json=self.github_profile)
        return httpx.Response(404)

    def token_form(self) -> dict[str, list[str]]:
        posts = [r for r in self.requests if r.method == "POST"]
        return parse_qs(posts[-1].content.decode())


@pytest.fixture
def provider(app: FastAPI, monkeypatch: pytest.MonkeyPatch):
    for name, value in {
        "GOOGLE_CLIENT_ID": "google-web",
        "GOOGLE_CLIENT_SECRET": "google-secret",
        "GOOGLE_REDIRECT_URI": "http://localhost:3000/oauth/google",
        "GOOGLE_MOBILE_CLIENT_ID": "google-mobile",
        "GITHUB_CLIENT_ID": "github-web",
        "GITHUB_CLIENT_SECRET": "github-secret",
    }.items():
        monkeypatch.setenv(f"LEORNIAN_{name}", value)
    get_settings.cache_clear()
    fake = FakeProvider()
    app.state.oauth_transport = httpx.MockTransport(fake)
    yield fake
    monkeypatch.undo()
    get_settings.cache_clear()


async def _state(client: AsyncClient, provider_name: str = "google") -> str:
    response = await client.post(f"/auth/oauth/{provider_name}", json={"redirect_uri": ""})
    assert response.status_code == 200
    return parse_qs(urlparse(response.json()["redirect_url"]).query)["state"][0]


async def _sign_in(client: AsyncClient, provider_name: str = "google") -> httpx.Response:
    state = await _state(client, provider_name)
    return await client.get(f"/auth/oauth/callback/{provider_name}", params={"code": "auth-code", "state": state})


class TestAuthorize:
    async def test_authorization_url(self, client: AsyncClient, provider: FakeProvider):
        response = await client.post("/auth/oauth/google", json={"redirect_uri": ""})
        url = urlparse(response.json()["redirect_url"])
        params = parse_qs(url.query)
        assert url.netloc == "accounts.google.com"
        assert params["client_id"] == ["google-web"]
        assert params["redirect_uri"] == ["http://localhost:3000/oauth/google"]
        assert params["scope"] == ["openid email profile"]
        assert params["response_type"] == ["code"]
        assert params["state"][0]

    async def test_unconfigured_provider(self, client: AsyncClient, provider: FakeProvider):
        response = await client.post("/auth/oauth/facebook", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Unsupported OAuth provider: facebook"}


class TestCallback:
    async def test_first_sign_in_creates_verified_user(self, client: AsyncClient, provider: FakeProvider):
        response = await _sign_in(client)
        assert response.status_code == 200
        user = response.json()["user"]
        assert user["email"] == "yvonne@example.com"
        assert user["username"] == "yvonne"
        assert user["image"] == "https://img.example.com/y.png"
        assert user["email_verified"] is not None
        assert provider.token_form()["code"] == ["auth-code"]

        again = await _sign_in(client)
        assert again.json()["user"]["id"] == user["id"]

    async def test_state_is_single_use(self, client: AsyncClient, provider: FakeProvider):
        state = await _state(client)
        params = {"code": "auth-code", "state": state}
        assert (await client.get("/auth/oauth/callback/google", params=params)).status_code == 200

        replay = await client.get("/auth/oauth/callback/google", params=params)
        assert replay.status_code == 400
        assert replay.json() == {"error": "Invalid or expired OAuth state"}

    async def test_state_bound_to_provider(self, client: AsyncClient, provider: FakeProvider):
        state = await _state(client, "google")
        response = await client.get("/auth/oauth/callback/github", params={"code": "c", "state": state})
        assert response.status_code == 400
        assert response.json() == {"error": "State provider mismatch"}

    async def test_missing_code(self, client: AsyncClient, provider: FakeProvider):
        response = await client.get("/auth/oauth/callback/google", params={"state": "whatever"})
        assert response.status_code == 400
        assert response.json() == {"error": "Authorization code is required"}

    async def test_provider_rejects_code(self, client: AsyncClient, provider: FakeProvider):
        provider.token_status = 400
        response = await _sign_in(client)
        assert response.status_code == 502

    async def test_provider_answers_with_html(self, client: AsyncClient, provider: FakeProvider):
        provider.token_body = "<html>oops</html>"
        response = await _sign_in(client)
        assert response.status_code == 502
        assert response.json() == {"error": "Failed to complete sign-in with the identity provider"}

    async def test_expired_state_is_rejected_and_consumed(
        self, client: AsyncClient, provider: FakeProvider, db_session: AsyncSession
    ):
        store = CredentialStore(db_session)
        expired_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await store.create_oauth_state("stale-state", "google", "", expired_at)

        response = await client.get(
            "/auth/oauth/callback/google", params={"code": "auth-code", "state": "stale-state"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid or expired OAuth state"}
        assert not [r for r in provider.requests if r.method == "POST"]

        db_session.expire_all()
        assert await store.get_oauth_state("stale-state") is None

    async def test_links_existing_user_by_verified_email(self, client: AsyncClient, provider: FakeProvider):
        existing = await create_user("yvonne")
        response = await _sign_in(client)
        assert response.status_code == 200
        assert response.json()["user"]["id"] == existing.id

        accounts = await client.get("/auth/linked-accounts", headers=auth_headers(existing))
        assert [a["provider"] for a in accounts.json()["linked_accounts"]] == ["google"]

    async def test_unverified_provider_email_does_not_take_over(self, client: AsyncClient, provider: FakeProvider):
        await create_user("yvonne")
        provider.google_profile["email_verified"] = False
        response = await _sign_in(client)
        assert response.status_code == 409

    async def test_username_collision_gets_suffix(self, client: AsyncClient, provider: FakeProvider):
        await create_user("yvonne", email="someone-else@example.com")
        response = await _sign_in(client)
        assert response.json()["user"]["username"] == "yvonne1"

    async def test_github_falls_back_to_primary_email(self, client: AsyncClient, provider: FakeProvider):
        response = await _sign_in(client, "github")
        assert response.status_code == 200
        user = response.json()["user"]
        assert user["email"] == "octo@example.com"
        assert user["username"] == "octo"
        assert any(str(r.url) == GITHUB_EMAILS_URL for r in provider.requests)


class TestMobileCallback:
    async def test_pkce_exchange(self, client: AsyncClient, provider: FakeProvider):
        response = await client.post(
            "/auth/oauth/mobile/google/callback",
            json={"code": "mobile-code", "code_verifier": "verifier-123", "redirect_uri": "leornian://oauth"},
        )
        assert response.status_code == 200
        form = provider.token_form()
        assert form["client_id"] == ["google-mobile"]
        assert form["code_verifier"] == ["verifier-123"]
        assert form["redirect_uri"] == ["leornian://oauth"]
        assert "client_secret" not in form


class TestLinking:
    async def test_link_then_unlink(self, client: AsyncClient, provider: FakeProvider):
        user = await create_user("zara")
        headers = auth_headers(user)
        state = await _state(client)

        linked = await client.post("/auth/link/google", json={"code": "c", "state": state}, headers=headers)
        assert linked.status_code == 200
        assert linked.json() == {
            "message": "Account linked successfully",
            "provider": "google",
            "email": "yvonne@example.com",
        }

        unlinked = await client.delete("/auth/unlink/google", headers=headers)
        assert unlinked.status_code == 200
        accounts = await client.get("/auth/linked-accounts", headers=headers)
        assert accounts.json() == {"linked_accounts": []}

    async def test_identity_owned_by_another_user(self, client: AsyncClient, provider: FakeProvider):
        await _sign_in(client)
        other = await create_user("other")
        state = await _state(client)
        response = await client.post(
            "/auth/link/google", json={"code": "c", "state": state}, headers=auth_headers(other)
        )
        assert response.status_code == 409

    async def test_cannot_unlink_only_method(self, client: AsyncClient, provider: FakeProvider):
        data = (await _sign_in(client)).json()
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.delete("/auth/unlink/google", headers=headers)
        assert response.status_code == 400
        assert response.json() == {"error": "Cannot unlink the only sign-in method; set a password first"}

    async def test_unlink_not_linked(self, client: AsyncClient, provider: FakeProvider):
        user = await create_user("nolinks")
        response = await client.delete("/auth/unlink/github", headers=auth_headers(user))
        assert response.status_code == 404


class TestNormalize:
    def test_google(self):
        info = normalize_user_info("google", GOOGLE_PROFILE)
        assert info.id == "google-123"
        assert info.email_verified is True

    def test_github_public_email_counts_as_verified(self):
        info = normalize_user_info("github", {"id": 7, "login": "gh", "email": "gh@example.com"})
        assert info.id == "7"
        assert info.name == "gh"
        assert info.email_verified is True

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedProvider):
            normalize_user_info("myspace", {})
