"""Tests for forgot/reset password and authenticated password change."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import TEST_PASSWORD, auth_headers, create_user
from leornian.auth.store import CredentialStore
from leornian.db.models import PasswordResetToken

NEW_PASSWORD = "a brand new passphrase"
RESET_MESSAGE = "If that email exists, a reset link has been sent."


def _token_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


async def _request_reset(client: AsyncClient, sent_emails, email: str) -> str:
    response = await client.post("/auth/forgot-password", json={"email": email})
    assert response.status_code == 200
    resets = [ctx for to, template, ctx in await sent_emails() if template == "password_reset" and to == email]
    return _token_from(resets[-1]["reset_url"])


async def _login(client: AsyncClient, email: str, password: str):
    return await client.post("/auth/login", json={"identifier": email, "password": password})


class TestForgotPassword:
    async def test_same_reply_for_known_and_unknown(self, client: AsyncClient, sent_emails):
        await create_user("ivan")
        known = await client.post("/auth/forgot-password", json={"email": "ivan@example.com"})
        unknown = await client.post("/auth/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json() == {"message": RESET_MESSAGE}

        emails = await sent_emails()
        assert [to for to, _, _ in emails] == ["ivan@example.com"]

    async def test_unknown_address_still_touches_the_store(
        self, client: AsyncClient, sent_emails, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch
    ):
        lookups: list[str] = []
        original = CredentialStore.get_password_reset_token

        async def recording_lookup(store: CredentialStore, token_hash: str):
            lookups.append(token_hash)
            return await original(store, token_hash)

        monkeypatch.setattr(CredentialStore, "get_password_reset_token", recording_lookup)
        response = await client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
        assert response.json() == {"message": RESET_MESSAGE}

        assert len(lookups) == 1
        assert len(lookups[0]) == 64
        assert await sent_emails() == []
        assert (await db_session.execute(select(PasswordResetToken))).scalars().all() == []

    async def test_only_hash_is_stored(self, client: AsyncClient, sent_emails, db_session: AsyncSession):
        await create_user("judy")
        token = await _request_reset(client, sent_emails, "judy@example.com")
        rows = (await db_session.execute(select(PasswordResetToken))).scalars().all()
        assert len(rows) == 1
        assert rows[0].token_hash != token

    async def test_new_request_replaces_old_token(self, client: AsyncClient, sent_emails):
        await create_user("ken")
        first = await _request_reset(client, sent_emails, "ken@example.com")
        second = await _request_reset(client, sent_emails, "ken@example.com")
        assert first != second

        response = await client.post("/auth/reset-password", json={"token": first, "new_password": NEW_PASSWORD})
        assert response.status_code == 400
        assert response.json() == {"error": "Password reset token not found"}


class TestResetPassword:
    async def test_reset_changes_password_and_ends_sessions(self, client: AsyncClient, sent_emails):
        await create_user("lena")
        session = (await _login(client, "lena@example.com", TEST_PASSWORD)).json()
        token = await _request_reset(client, sent_emails, "lena@example.com")

        response = await client.post("/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert response.status_code == 200
        assert response.json() == {"message": "Password has been reset successfully"}

        assert (await _login(client, "lena@example.com", TEST_PASSWORD)).status_code == 401
        assert (await _login(client, "lena@example.com", NEW_PASSWORD)).status_code == 200

        refresh = await client.post("/auth/refresh-token", json={"refresh_token": session["refresh_token"]})
        assert refresh.status_code == 401

        templates = [template for _, template, _ in await sent_emails()]
        assert templates.count("password_changed") == 1

    async def test_token_is_single_use(self, client: AsyncClient, sent_emails):
        await create_user("mallory")
        token = await _request_reset(client, sent_emails, "mallory@example.com")
        body = {"token": token, "new_password": NEW_PASSWORD}
        assert (await client.post("/auth/reset-password", json=body)).status_code == 200

        body["new_password"] = "yet another passphrase"
        response = await client.post("/auth/reset-password", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": "Password reset token not found"}

    async def test_expired_token(self, client: AsyncClient, sent_emails, db_session: AsyncSession):
        await create_user("nina")
        token = await _request_reset(client, sent_emails, "nina@example.com")
        await db_session.execute(
            update(PasswordResetToken).values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        await db_session.commit()

        response = await client.post("/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert response.status_code == 400
        assert response.json() == {"error": "Password reset token has expired"}

    async def test_same_password_rejected(self, client: AsyncClient, sent_emails):
        await create_user("oscar")
        token = await _request_reset(client, sent_emails, "oscar@example.com")
        response = await client.post("/auth/reset-password", json={"token": token, "new_password": TEST_PASSWORD})
        assert response.status_code == 400
        assert response.json() == {"error": "New password must be different from the current password"}

    async def test_weak_password_keeps_token(self, client: AsyncClient, sent_emails):
        await create_user("peggy")
        token = await _request_reset(client, sent_emails, "peggy@example.com")
        weak = await client.post("/auth/reset-password", json={"token": token, "new_password": "short"})
        assert weak.status_code == 400

        ok = await client.post("/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert ok.status_code == 200

    async def test_unknown_token(self, client: AsyncClient):
        response = await client.post("/auth/reset-password", json={"token": "bogus", "new_password": NEW_PASSWORD})
        assert response.status_code == 400


class TestChangePassword:
    async def test_change_password(self, client: AsyncClient, sent_emails):
        user = await create_user("quinn")
        session = (await _login(client, "quinn@example.com", TEST_PASSWORD)).json()

        response = await client.post(
            "/auth/change-password",
            json={"old_password": TEST_PASSWORD, "new_password": NEW_PASSWORD},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        assert response.json() == {"message": "Password changed successfully"}

        assert (await _login(client, "quinn@example.com", NEW_PASSWORD)).status_code == 200
        refresh = await client.post("/auth/refresh-token", json={"refresh_token": session["refresh_token"]})
        assert refresh.status_code == 401
        assert ("quinn@example.com", "password_changed") in [(to, t) for to, t, _ in await sent_emails()]

    async def test_wrong_old_password(self, client: AsyncClient):
        user = await create_user("rupert")
        response = await client.post(
            "/auth/change-password",
            json={"old_password": "not my password", "new_password": NEW_PASSWORD},
            headers=auth_headers(user),
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Current password is incorrect"}

    async def test_same_password(self, client: AsyncClient):
        user = await create_user("sybil")
        response = await client.post(
            "/auth/change-password",
            json={"old_password": TEST_PASSWORD, "new_password": TEST_PASSWORD},
            headers=auth_headers(user),
        )
        assert response.status_code == 400

    async def test_requires_authentication(self, client: AsyncClient):
        response = await client.post(
            "/auth/change-password", json={"old_password": TEST_PASSWORD, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 401
