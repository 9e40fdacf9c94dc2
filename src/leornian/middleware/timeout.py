"""Request deadline middleware."""

import asyncio
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from leornian.errors import ServiceUnavailable

logger = structlog.get_logger()


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 503 when a request runs past ``timeout_seconds``."""

    def __init__(self, app: Any, timeout_seconds: float = 60.0) -> None:  # noqa: ANN401
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", path=request.url.path, timeout=self.timeout_seconds)
            error = ServiceUnavailable("Request timed out")
            return JSONResponse(status_code=error.status_code, content=error.to_body())
