"""Authentication router: all /api/v1/auth/* endpoints."""

from __future__ import annotations

from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from gather.auth.context import AuthContext
from gather.auth.dependencies import get_auth_context, require_service_key
from gather.auth.jwt import create_access_token
from gather.auth.schemas import (
    ClaimPointsRequest,
    ClaimPointsResponse,
    LinkRequest,
    LinkResponse,
    LoginRequest,
    MeResponse,
    TokenResponse,
)
from gather.config import get_settings
from gather.database import get_session
from gather.db.base import as_utc
from gather.dependencies import get_queue, get_redis_dep
from gather.errors import DependencyUnavailable, ValidationFailure
from gather.identity.platforms import make_platform_user_id, parse_platform
from gather.identity.provider import LinkageProvider
from gather.identity.resolver import IdentityResolver, ResolveHints
from gather.identity.store import IdentityStore
from gather.points.ledger import PendingAction, PointsLedger
from gather.tasks.queue import TaskQueue

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _resolver(db: AsyncSession) -> IdentityResolver:
    return IdentityResolver(db, LinkageProvider.from_settings(get_settings()))


@router.post("/login", response_model=TokenResponse, dependencies=[Depends(require_service_key)])
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_session),
    tasks: TaskQueue = Depends(get_queue),
) -> TokenResponse:
    """Resolve the caller's canonical identity and issue an access token.

    Called by login providers after they have authenticated the user.
    """
    platform = parse_platform(body.platform)
    platform_user_id = make_platform_user_id(platform, body.native_id)
    resolver = _resolver(db)
    canonical_id = await resolver.resolve(
        platform_user_id,
        ResolveHints(external_auth_id=body.external_auth_id, display_name=body.display_name),
    )
    if body.merge and body.external_auth_id:
        try:
            canonical_id = (await resolver.merge_all(body.external_auth_id)).canonical_id
        except DependencyUnavailable:
            # Login still succeeds; reconciliation converges the accounts later
            logger.warning("login_merge_deferred", platform_user_id=platform_user_id)

    await tasks.enqueue("award_points", platform_user_id, platform.value, "miniapp_open", None)
    settings = get_settings()
    logger.info("login", platform_user_id=platform_user_id, canonical_id=canonical_id)
    return TokenResponse(
        access_token=create_access_token(platform_user_id, platform.value, canonical_id),
        expires_in=settings.jwt_access_token_expire_minutes * 60,
        platform_user_id=platform_user_id,
        canonical_id=canonical_id,
    )


@router.post("/link", response_model=LinkResponse)
async def link(
    body: LinkRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> LinkResponse:
    """Merge every account linked to the caller's external auth id."""
    external_auth_id = body.external_auth_id
    if external_auth_id is None:
        identity = await IdentityStore(db).get(ctx.platform_user_id)
        external_auth_id = identity.external_auth_id if identity else None
    if not external_auth_id:
        msg = "No external auth id to link"
        raise ValidationFailure(msg)

    resolver = _resolver(db)
    linkage = await resolver.linkage_for(external_auth_id)
    if ctx.platform_user_id not in linkage.platform_user_ids():
        raise HTTPException(status_code=403, detail="External auth id is not linked to this account")
    result = await resolver.merge_all(external_auth_id, linkage)
    return LinkResponse(canonical_id=result.canonical_id, platform_user_ids=result.platform_user_ids)


@router.post("/claim-points", response_model=ClaimPointsResponse)
async def claim_points(
    body: ClaimPointsRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
) -> ClaimPointsResponse:
    """Credit actions recorded before login. Safe to replay."""
    settings = get_settings()
    ledger = PointsLedger(
        db,
        redis,
        max_pending_age=timedelta(hours=settings.pending_points_max_age_hours),
        max_pending_actions=settings.pending_points_max_actions,
    )
    result = await ledger.claim_pending(
        ctx.platform_user_id,
        ctx.platform,
        [PendingAction(action=a.action, timestamp=as_utc(a.timestamp)) for a in body.actions],
    )
    return ClaimPointsResponse(
        claimed=result.claimed,
        total=result.total,
        accepted=result.accepted,
        discarded=result.discarded,
    )


@router.get("/me", response_model=MeResponse)
async def me(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> MeResponse:
    """The caller's identity, linked accounts and platform flags."""
    resolver = IdentityResolver(db)
    identity = await IdentityStore(db).get(ctx.platform_user_id)
    return MeResponse(
        platform_user_id=ctx.platform_user_id,
        platform=ctx.platform,
        canonical_id=ctx.canonical_id,
        display_name=identity.display_name if identity else None,
        linked_ids=await resolver.linked_ids(ctx.canonical_id),
        accounts=await resolver.account_flags(ctx.canonical_id),
    )
