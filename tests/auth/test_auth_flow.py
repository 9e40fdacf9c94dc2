"""Integration tests for registration, login, refresh rotation and logout."""

import jwt as pyjwt
from httpx import AsyncClient

from conftest import TEST_PASSWORD, auth_headers, create_user


async def _register(client: AsyncClient, username: str = "alice", **overrides: object):
    body = {
        "username": username,
        "email": f"{username}@example.com",
        "password": TEST_PASSWORD,
        "name": username.title(),
    }
    body.update(overrides)
    return await client.post("/auth/register", json=body)


async def _login(client: AsyncClient, identifier: str, password: str = TEST_PASSWORD):
    return await client.post("/auth/login", json={"identifier": identifier, "password": password})


class TestRegistration:
    async def test_register_then_login_by_email(self, client: AsyncClient):
        response = await _register(client)
        assert response.status_code == 201
        data = response.json()
        assert data["username"] == "alice"
        assert data["email"] == "alice@example.com"
        assert data["message"] == "User registered successfully"
        assert "password_hash" not in data

        response = await _login(client, "alice@example.com")
        assert response.status_code == 200
        tokens = response.json()
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["user"]["id"] == data["id"]

        claims = pyjwt.decode(tokens["access_token"], options={"verify_signature": False})
        assert claims["role"] == "user"
        assert claims["sub"] == data["id"]
        assert claims["user_id"] == data["id"]
        assert claims["iss"] == "leornian-auth-service"
        assert claims["aud"] == "leornian-api"

    async def test_register_sends_verification_email(self, client: AsyncClient, sent_emails):
        await _register(client, "verifyme")
        emails = await sent_emails()
        assert [(to, template) for to, template, _ in emails] == [("verifyme@example.com", "verify_email")]
        assert "token=" in emails[0][2]["verify_url"]

    async def test_register_normalizes_email(self, client: AsyncClient):
        response = await _register(client, "mixed", email="Mixed.Case@Example.COM")
        assert response.status_code == 201
        assert response.json()["email"] == "mixed.case@example.com"

    async def test_duplicate_email(self, client: AsyncClient):
        await _register(client, "first", email="shared@example.com")
        response = await _register(client, "second", email="shared@example.com")
        assert response.status_code == 409
        assert response.json() == {"error": "User already exists"}

    async def test_duplicate_username_case_insensitive(self, client: AsyncClient):
        await _register(client, "bob")
        response = await _register(client, "BOB", email="other@example.com")
        assert response.status_code == 409
        assert response.json() == {"error": "Username already exists"}

    async def test_weak_password(self, client: AsyncClient):
        response = await _register(client, password="short")
        assert response.status_code == 400
        assert response.json() == {"error": "Password must be at least 8 characters"}

    async def test_admin_role_cannot_be_requested(self, client: AsyncClient):
        response = await _register(client, role="admin")
        assert response.status_code == 422

    async def test_coach_role_can_be_requested(self, client: AsyncClient):
        await _register(client, "coachy", role="coach")
        response = await _login(client, "coachy")
        claims = pyjwt.decode(response.json()["access_token"], options={"verify_signature": False})
        assert claims["role"] == "coach"

    async def test_invalid_username_rejected(self, client: AsyncClient):
        response = await _register(client, "no spaces allowed")
        assert response.status_code == 422
        assert response.json()["error"] == "Validation error"


class TestLogin:
    async def test_login_by_username(self, client: AsyncClient):
        user = await create_user("carol")
        response = await _login(client, "carol")
        assert response.status_code == 200
        assert response.json()["user"]["id"] == user.id

    async def test_login_identifier_case_insensitive(self, client: AsyncClient):
        await create_user("dave")
        assert (await _login(client, "DAVE@EXAMPLE.COM")).status_code == 200
        assert (await _login(client, "Dave")).status_code == 200

    async def test_unknown_user_and_wrong_password_look_identical(self, client: AsyncClient):
        await create_user("erin")
        ghost = await _login(client, "ghost@example.com")
        wrong = await _login(client, "erin@example.com", "not the password")
        assert ghost.status_code == wrong.status_code == 401
        assert ghost.json() == wrong.json() == {"error": "Invalid email or password"}

    async def test_passwordless_account_cannot_log_in(self, client: AsyncClient):
        await create_user("federated", password=None)
        response = await _login(client, "federated@example.com", TEST_PASSWORD)
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid email or password"}


class TestRefreshAndLogout:
    async def test_refresh_token_is_single_use(self, client: AsyncClient):
        await create_user("frank")
        tokens = (await _login(client, "frank")).json()

        first = await client.post("/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        rotated = first.json()
        assert rotated["refresh_token"] != tokens["refresh_token"]
        assert rotated["token_type"] == "Bearer"

        replay = await client.post("/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json() == {"error": "Invalid or expired refresh token"}

        again = await client.post("/auth/refresh-token", json={"refresh_token": rotated["refresh_token"]})
        assert again.status_code == 200

    async def test_unknown_refresh_token(self, client: AsyncClient):
        response = await client.post("/auth/refresh-token", json={"refresh_token": "never-issued"})
        assert response.status_code == 401

    async def test_logout_revokes_every_refresh_token(self, client: AsyncClient):
        await create_user("grace")
        first = (await _login(client, "grace")).json()
        second = (await _login(client, "grace@example.com")).json()
        headers = {"Authorization": f"Bearer {second['access_token']}"}

        response = await client.post("/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}

        for session in (first, second):
            response = await client.post("/auth/refresh-token", json={"refresh_token": session["refresh_token"]})
            assert response.status_code == 401
            assert response.json() == {"error": "Refresh token has expired"}

    async def test_logout_requires_bearer(self, client: AsyncClient):
        response = await client.post("/auth/logout")
        assert response.status_code == 401
        assert response.json() == {"error": "Authorization header required", "code": "UNAUTHORIZED"}


class TestValidateToken:
    async def test_valid_token(self, client: AsyncClient):
        user = await create_user("heidi")
        token = auth_headers(user)["Authorization"].removeprefix("Bearer ")
        response = await client.post("/auth/validate-token", json={"token": token})
        data = response.json()
        assert response.status_code == 200
        assert data["valid"] is True
        assert data["user"]["id"] == user.id
        assert data["claims"]["user_id"] == user.id
        assert data["message"] == "Token is valid"

    async def test_invalid_token_is_reported_not_raised(self, client: AsyncClient):
        response = await client.post("/auth/validate-token", json={"token": "garbage"})
        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["user"] is None
