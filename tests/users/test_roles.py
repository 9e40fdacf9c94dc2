"""Coach client listing and admin role management."""

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import TEST_PASSWORD, auth_headers, create_user
from leornian.db.models import CoachAssignment


class TestCoachClients:
    async def test_client_is_refused(self, client: AsyncClient):
        user = await create_user("athlete", role="client")
        response = await client.get("/users/me/clients", headers=auth_headers(user))
        assert response.status_code == 403
        assert response.json() == {"error": "Insufficient permissions"}

    async def test_plain_user_is_refused(self, client: AsyncClient):
        user = await create_user("member")
        response = await client.get("/users/me/clients", headers=auth_headers(user))
        assert response.status_code == 403

    async def test_coach_sees_active_clients(self, client: AsyncClient, db_session: AsyncSession):
        coach = await create_user("headcoach", role="coach")
        active = await create_user("active_client", role="client")
        former = await create_user("former_client", role="client")
        db_session.add_all(
            [
                CoachAssignment(coach_id=coach.id, user_id=active.id),
                CoachAssignment(coach_id=coach.id, user_id=former.id, is_active=False),
            ]
        )
        await db_session.commit()

        response = await client.get("/users/me/clients", headers=auth_headers(coach))
        assert response.status_code == 200
        assert [c["username"] for c in response.json()["clients"]] == ["active_client"]

    async def test_admin_is_allowed(self, client: AsyncClient):
        admin = await create_user("overseer", role="admin")
        response = await client.get("/users/me/clients", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json() == {"clients": []}


class TestRoleUpdate:
    async def test_admin_promotes_user(self, client: AsyncClient):
        admin = await create_user("promoter", role="admin")
        user = await create_user("rookie")
        response = await client.put(f"/users/{user.id}/role", json={"role": "coach"}, headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["role"] == "coach"

        profile = await client.get("/users/me", headers=auth_headers(user))
        assert profile.json()["role"] == "coach"

    async def test_role_change_ends_sessions(self, client: AsyncClient):
        admin = await create_user("demoter", role="admin")
        await create_user("veteran", role="coach")
        session = (await client.post("/auth/login", json={"identifier": "veteran", "password": TEST_PASSWORD})).json()

        await client.put(
            f"/users/{session['user']['id']}/role", json={"role": "client"}, headers=auth_headers(admin)
        )
        refresh = await client.post("/auth/refresh-token", json={"refresh_token": session["refresh_token"]})
        assert refresh.status_code == 401

    async def test_non_admin_is_refused(self, client: AsyncClient):
        coach = await create_user("ambitious", role="coach")
        response = await client.put(f"/users/{coach.id}/role", json={"role": "admin"}, headers=auth_headers(coach))
        assert response.status_code == 403

    async def test_unknown_user(self, client: AsyncClient):
        admin = await create_user("searcher", role="admin")
        response = await client.put(
            "/users/00000000-0000-0000-0000-000000000000/role", json={"role": "coach"}, headers=auth_headers(admin)
        )
        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}

    async def test_unknown_role(self, client: AsyncClient):
        admin = await create_user("strict", role="admin")
        user = await create_user("target")
        response = await client.put(f"/users/{user.id}/role", json={"role": "wizard"}, headers=auth_headers(admin))
        assert response.status_code == 422
