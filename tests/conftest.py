"""Shared test fixtures."""

from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

_TEST_DIR = tempfile.mkdtemp(prefix="leornian_test_")
os.environ["LEORNIAN_DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LEORNIAN_JWT_SECRET"] = "test-signing-secret-with-more-than-32-characters"
os.environ["LEORNIAN_REDIS_URL"] = ""
os.environ["LEORNIAN_LOG_FORMAT"] = "console"
os.environ["LEORNIAN_LOG_LEVEL"] = "WARNING"
# Individual tests install tight limiters where they exercise them.
for _bucket in ("LOGIN", "REGISTER", "PASSWORD_RESET", "REFRESH", "VERIFICATION"):
    os.environ[f"LEORNIAN_{_bucket}_RATE_LIMIT"] = "1000"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from leornian.auth.password import hash_password  # noqa: E402
from leornian.auth.service import drain_background_tasks  # noqa: E402
from leornian.auth.store import CredentialStore  # noqa: E402
from leornian.auth.tokens import get_token_minter  # noqa: E402
from leornian.config import get_settings  # noqa: E402
from leornian.database import get_engine, session_scope  # noqa: E402
from leornian.db.base import Base  # noqa: E402
from leornian.db.models import User  # noqa: E402
from leornian.main import create_app  # noqa: E402

get_settings.cache_clear()

TEST_PASSWORD = "correct horse battery"


async def reset_schema() -> None:
    """Drop and recreate every table on the current engine."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def create_user(
    username: str,
    *,
    role: str = "user",
    email: str | None = None,
    password: str | None = TEST_PASSWORD,
    name: str | None = None,
) -> User:
    """Insert a user directly, bypassing the HTTP layer."""
    async with session_scope() as db:
        return await CredentialStore(db).create_user(
            username=username,
            email=email or f"{username}@example.com",
            name=name or username.title(),
            password_hash=hash_password(password) if password else None,
            role=role,
        )


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {get_token_minter().create_access_token(user)}"}


def make_mailer() -> MagicMock:
    mailer = MagicMock()
    mailer.send_template = AsyncMock(return_value=True)
    return mailer


@pytest_asyncio.fixture
async def app() -> AsyncGenerator[FastAPI, None]:
    """Application with its lifespan running on a fresh SQLite schema and a mocked mailer."""
    get_settings.cache_clear()
    application = create_app()
    async with application.router.lifespan_context(application):
        await reset_schema()
        application.state.mailer = make_mailer()
        yield application
        await drain_background_tasks()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client bound to ``app``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db_session(app: FastAPI) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for test assertions."""
    async with session_scope() as session:
        yield session


@pytest.fixture
def mailer(app: FastAPI) -> MagicMock:
    return app.state.mailer  # type: ignore[no-any-return]


@pytest.fixture
def sent_emails(mailer: MagicMock) -> Callable[[], Awaitable[list[tuple[str, str, dict]]]]:
    """Await pending background sends and return ``(to, template, context)`` tuples."""

    async def _collect() -> list[tuple[str, str, dict]]:
        await drain_background_tasks()
        return [
            (c.kwargs["to"], c.kwargs["template_name"], c.kwargs["context"])
            for c in mailer.send_template.await_args_list
        ]

    return _collect
