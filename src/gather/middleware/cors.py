"""CORS for the web and mini-app frontends."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gather.config import Settings

# Frontends authenticate with bearer tokens, never cookies.
ALLOWED_METHODS = ["GET", "POST", "OPTIONS"]
ALLOWED_HEADERS = ["Authorization", "Content-Type", "X-Request-Id"]
# Clients read Payment-Required to build an on-chain payment and Retry-After to back off.
EXPOSED_HEADERS = [
    "X-Request-Id",
    "X-RateLimit-Remaining",
    "X-RateLimit-Limit",
    "Retry-After",
    "Payment-Required",
]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_origin_regex=settings.cors_origin_regex,
        allow_credentials=False,
        allow_methods=ALLOWED_METHODS,
        allow_headers=ALLOWED_HEADERS,
        expose_headers=EXPOSED_HEADERS,
        max_age=600,
    )
