"""FastAPI application factory."""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from leornian.auth.rate_limit import build_auth_limiters
from leornian.auth.router import router as auth_router
from leornian.auth.service import drain_background_tasks
from leornian.config import get_settings
from leornian.database import close_db, init_db
from leornian.email.service import EmailService
from leornian.health.router import router as health_router
from leornian.maintenance import run_sweeper
from leornian.messaging.hub import Hub
from leornian.messaging.router import router as messaging_router
from leornian.middleware import setup_middleware
from leornian.redis_client import close_redis, get_redis, init_redis
from leornian.users.router import router as users_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    app.state.auth_limiters = build_auth_limiters(settings)
    app.state.mailer = EmailService(redis=get_redis() if settings.redis_url else None)
    if not hasattr(app.state, "oauth_transport"):
        app.state.oauth_transport = None

    hub = Hub(mailbox_size=settings.ws_mailbox_size, send_queue_size=settings.ws_send_queue_size)
    hub.start()
    app.state.hub = hub
    sweeper = asyncio.create_task(run_sweeper(settings.credential_sweep_interval_seconds))
    logger.info("app_started", version=settings.app_version, environment=settings.environment)

    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await drain_background_tasks()
    await hub.stop()
    await close_redis()
    await close_db()
    logger.info("app_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Leornian API",
        description="Authentication and coach/client messaging backend for the Leornian fitness platform",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(messaging_router)

    return app
