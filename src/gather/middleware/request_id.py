"""Per-request correlation id and access log."""

import re
import time
import uuid
from collections.abc import Iterable
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

# Inbound ids end up in log lines; anything else is replaced.
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagate or mint an X-Request-Id, bind it into the log context and log the outcome."""

    def __init__(self, app: Any, quiet_paths: Iterable[str] = ()) -> None:  # noqa: ANN401
        super().__init__(app)
        self.quiet_paths = frozenset(quiet_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        inbound = request.headers.get("X-Request-Id", "")
        request_id = inbound if _VALID_REQUEST_ID.match(inbound) else str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        if request.url.path not in self.quiet_paths:
            logger.info(
                "request_completed",
                status=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        return response
