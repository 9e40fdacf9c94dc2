"""``leornian`` console entry point."""

from __future__ import annotations

import sys

import structlog
import uvicorn

from leornian.config import get_settings
from leornian.middleware.logging import setup_logging

logger = structlog.get_logger()


def main() -> None:
    """Validate required settings, then serve the app with uvicorn."""
    settings = get_settings()
    setup_logging(settings)

    missing = [
        name
        for name, value in (
            ("LEORNIAN_DATABASE_URL", settings.database_url),
            ("LEORNIAN_JWT_SECRET", settings.jwt_secret),
        )
        if not value
    ]
    if missing:
        logger.error("missing_required_settings", settings=missing)
        sys.exit(1)

    uvicorn.run(
        "leornian.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        ws_ping_interval=settings.ws_ping_interval_seconds,
        ws_ping_timeout=settings.ws_ping_timeout_seconds,
        timeout_graceful_shutdown=settings.shutdown_grace_period_seconds,
        log_config=None,
    )


if __name__ == "__main__":
    main()
