"""Middleware registration."""

from fastapi import FastAPI

from leornian.config import Settings
from leornian.middleware.cors import setup_cors
from leornian.middleware.error_handler import setup_error_handlers
from leornian.middleware.logging import setup_logging
from leornian.middleware.rate_limit import RateLimitMiddleware
from leornian.middleware.request_id import RequestIdMiddleware
from leornian.middleware.timeout import TimeoutMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette runs middleware in reverse-add order (last added = outermost).
    CORS stays outermost so it also wraps 429 and 503 responses.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
