"""Sliding-window limiter unit tests and endpoint enforcement."""

from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from httpx import AsyncClient
from starlette.requests import Request

from conftest import auth_headers, create_user
from leornian.auth.rate_limit import SlidingWindowLimiter, client_ip
from leornian.config import get_settings


@pytest.fixture
def behind_proxy(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Treat the test client (127.0.0.1) as a trusted reverse proxy."""
    monkeypatch.setenv("LEORNIAN_TRUSTED_PROXIES", '["127.0.0.1", "10.9.9.9"]')
    get_settings.cache_clear()
    yield
    monkeypatch.undo()
    get_settings.cache_clear()


def _request(peer: str, forwarded: str | None = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "headers": headers, "client": (peer, 5000)})


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowLimiter:
    def test_allows_up_to_limit(self):
        limiter = SlidingWindowLimiter(3, 60, clock=FakeClock())
        assert [limiter.hit("k") for _ in range(3)] == [None, None, None]
        assert limiter.hit("k") == 60

    def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowLimiter(2, 60, clock=clock)
        limiter.hit("k")
        clock.now += 30
        limiter.hit("k")
        assert limiter.hit("k") == 30

        clock.now += 30
        assert limiter.hit("k") is None
        assert limiter.hit("k") is not None

    def test_keys_are_independent(self):
        limiter = SlidingWindowLimiter(1, 60, clock=FakeClock())
        assert limiter.hit("a") is None
        assert limiter.hit("b") is None
        assert limiter.hit("a") is not None

    def test_reset(self):
        limiter = SlidingWindowLimiter(1, 60, clock=FakeClock())
        limiter.hit("a")
        limiter.hit("b")
        limiter.reset("a")
        assert limiter.hit("a") is None
        assert limiter.hit("b") is not None
        limiter.reset()
        assert limiter.hit("b") is None


class TestLoginRateLimit:
    async def test_sixth_attempt_is_rejected(self, app: FastAPI, client: AsyncClient):
        app.state.auth_limiters["login"] = SlidingWindowLimiter(5, 900)
        await create_user("limited")
        body = {"identifier": "limited@example.com", "password": "wrong password"}

        for _ in range(5):
            assert (await client.post("/auth/login", json=body)).status_code == 401

        response = await client.post("/auth/login", json=body)
        assert response.status_code == 429
        assert response.json() == {"error": "Too many attempts. Please try again later."}
        assert 1 <= int(response.headers["Retry-After"]) <= 900

    async def test_limit_is_per_client_ip_behind_trusted_proxy(
        self, app: FastAPI, client: AsyncClient, behind_proxy: None
    ):
        app.state.auth_limiters["login"] = SlidingWindowLimiter(1, 900)
        body = {"identifier": "nobody@example.com", "password": "whatever1"}
        first = await client.post("/auth/login", json=body, headers={"X-Forwarded-For": "10.0.0.1"})
        other = await client.post("/auth/login", json=body, headers={"X-Forwarded-For": "10.0.0.2"})
        blocked = await client.post("/auth/login", json=body, headers={"X-Forwarded-For": "10.0.0.1"})
        assert (first.status_code, other.status_code, blocked.status_code) == (401, 401, 429)

    async def test_spoofed_forwarded_header_is_ignored(self, app: FastAPI, client: AsyncClient):
        app.state.auth_limiters["login"] = SlidingWindowLimiter(1, 900)
        body = {"identifier": "nobody@example.com", "password": "whatever1"}
        first = await client.post("/auth/login", json=body, headers={"X-Forwarded-For": "10.0.0.1"})
        rotated = await client.post("/auth/login", json=body, headers={"X-Forwarded-For": "10.0.0.2"})
        assert (first.status_code, rotated.status_code) == (401, 429)

    async def test_authenticated_calls_are_keyed_by_user(self, app: FastAPI, client: AsyncClient):
        app.state.auth_limiters["refresh"] = SlidingWindowLimiter(1, 60)
        alice = await create_user("ratealice")
        bob = await create_user("ratebob")
        body = {"refresh_token": "unknown"}

        assert (await client.post("/auth/refresh-token", json=body, headers=auth_headers(alice))).status_code == 401
        assert (await client.post("/auth/refresh-token", json=body, headers=auth_headers(bob))).status_code == 401
        assert (await client.post("/auth/refresh-token", json=body, headers=auth_headers(alice))).status_code == 429

    async def test_register_limit(self, app: FastAPI, client: AsyncClient):
        app.state.auth_limiters["register"] = SlidingWindowLimiter(1, 3600)
        body = {"username": "onlyone", "email": "onlyone@example.com", "password": "long enough pw"}
        assert (await client.post("/auth/register", json=body)).status_code == 201
        body = {"username": "second", "email": "second@example.com", "password": "long enough pw"}
        assert (await client.post("/auth/register", json=body)).status_code == 429


class TestClientIp:
    def test_direct_peer_by_default(self):
        assert client_ip(_request("203.0.113.7", "10.0.0.1")) == "203.0.113.7"

    def test_untrusted_peer_header_ignored(self, behind_proxy: None):
        assert client_ip(_request("203.0.113.7", "10.0.0.1")) == "203.0.113.7"

    def test_trusted_proxy_chain(self, behind_proxy: None):
        assert client_ip(_request("127.0.0.1", "198.51.100.4")) == "198.51.100.4"
        # A client-supplied prefix cannot override the hop the proxies recorded.
        assert client_ip(_request("127.0.0.1", "1.2.3.4, 198.51.100.4, 10.9.9.9")) == "198.51.100.4"

    def test_all_hops_trusted(self, behind_proxy: None):
        assert client_ip(_request("127.0.0.1", "10.9.9.9")) == "10.9.9.9"
