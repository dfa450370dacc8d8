"""HTTP middleware stack for the Gather API."""

from fastapi import FastAPI

from gather.config import Settings
from gather.middleware.cors import setup_cors
from gather.middleware.error_handler import setup_error_handlers
from gather.middleware.logging import setup_logging
from gather.middleware.rate_limit import RateLimitMiddleware
from gather.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Install logging, error handlers and middleware.

    Outermost first, a request passes CORS, then the request id (so 429s
    carry an id and are logged), then the rate limiter. Health check paths
    skip both the limiter and the access log.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    # add_middleware wraps everything added before it
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        exempt_paths=settings.health_check_paths,
    )
    app.add_middleware(RequestIdMiddleware, quiet_paths=settings.health_check_paths)
    setup_cors(app, settings)
