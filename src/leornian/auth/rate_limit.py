"""
In-process sliding-window limiters for the sensitive auth endpoints.

Each endpoint family (login, register, password reset, refresh, verification)
has its own limiter. A request is keyed by the authenticated user id when it
carries a valid bearer token, otherwise by client IP.
"""

from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request

from leornian.auth.tokens import get_token_minter
from leornian.config import Settings, get_settings
from leornian.errors import AppError, TooManyAttempts

logger = structlog.get_logger()


class SlidingWindowLimiter:
    """Allows at most ``limit`` hits per key within any ``window_seconds`` span."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> float | None:
        """
        Record one attempt for ``key``.

        Returns:
            ``None`` when the attempt is allowed, otherwise the number of
            seconds until the oldest hit leaves the window.
        """
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return self.window_seconds - (now - hits[0])
            hits.append(now)
            return None

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


def build_auth_limiters(settings: Settings) -> dict[str, SlidingWindowLimiter]:
    """One limiter per protected endpoint family."""
    return {
        "login": SlidingWindowLimiter(settings.login_rate_limit, settings.login_rate_window_seconds),
        "register": SlidingWindowLimiter(settings.register_rate_limit, settings.register_rate_window_seconds),
        "password_reset": SlidingWindowLimiter(
            settings.password_reset_rate_limit, settings.password_reset_rate_window_seconds
        ),
        "refresh": SlidingWindowLimiter(settings.refresh_rate_limit, settings.refresh_rate_window_seconds),
        "verification": SlidingWindowLimiter(
            settings.verification_rate_limit, settings.verification_rate_window_seconds
        ),
    }


def client_ip(request: Request) -> str:
    """
    Address of the caller.

    ``X-Forwarded-For`` is honoured only when the direct peer is a configured
    trusted proxy; the first hop from the right that is not itself trusted wins.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    trusted = get_settings().trusted_proxies
    if not forwarded or peer not in trusted:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def rate_limit_key(request: Request) -> str:
    """``user:<id>`` for a valid bearer token, else ``ip:<address>``."""
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            claims = get_token_minter().validate(token.strip())
        except AppError:
            pass
        else:
            return f"user:{claims.user_id}"
    return f"ip:{client_ip(request)}"


def rate_limited(bucket: str) -> Callable[[Request], Awaitable[None]]:
    """
    FastAPI dependency factory enforcing the named limiter.

    Raises:
        TooManyAttempts: With a ``Retry-After`` header when the window is full.
    """

    async def _check(request: Request) -> None:
        limiter: SlidingWindowLimiter = request.app.state.auth_limiters[bucket]
        key = rate_limit_key(request)
        retry_after = limiter.hit(key)
        if retry_after is not None:
            logger.warning("auth_rate_limited", bucket=bucket, key=key)
            raise TooManyAttempts(headers={"Retry-After": str(max(1, math.ceil(retry_after)))})

    return _check
