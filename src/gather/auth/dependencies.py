"""FastAPI authentication dependencies."""

from __future__ import annotations

import secrets

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from gather.auth.context import AuthContext
from gather.auth.jwt import verify_token
from gather.config import get_settings
from gather.database import get_session
from gather.identity.platforms import detect_platform
from gather.identity.store import IdentityStore

_bearer = HTTPBearer()
_service_key = APIKeyHeader(name="X-Service-Key", auto_error=False)
_admin_key = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> AuthContext:
    """
    Verify the bearer token and build the caller's AuthContext.

    The canonical id is re-read from the identity store, not trusted from the
    token, so a merge after login takes effect on the next request.
    """
    try:
        payload = verify_token(credentials.credentials, expected_type="access")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    platform_user_id = payload["sub"]
    canonical_id = await IdentityStore(db).canonical_of(platform_user_id)
    if canonical_id is None:
        raise HTTPException(status_code=401, detail="Identity not found")
    return AuthContext(
        platform_user_id=platform_user_id,
        platform=payload.get("platform") or detect_platform(platform_user_id).value,
        canonical_id=canonical_id,
    )


def _check_key(provided: str | None, expected: str, name: str) -> None:
    if not expected:
        raise HTTPException(status_code=503, detail=f"{name} not configured")
    if provided is None or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail=f"Invalid {name}")


async def require_service_key(key: str | None = Security(_service_key)) -> None:
    """Server-to-server callers (login providers)."""
    _check_key(key, get_settings().service_api_key, "service key")


async def require_admin_key(key: str | None = Security(_admin_key)) -> None:
    """Operator endpoints."""
    _check_key(key, get_settings().admin_api_key, "admin key")
