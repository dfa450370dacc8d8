"""Points API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gather.auth.context import AuthContext
from gather.auth.dependencies import get_auth_context, require_admin_key
from gather.database import get_session
from gather.dependencies import get_queue, get_redis_dep
from gather.errors import ValidationFailure
from gather.identity.platforms import detect_platform
from gather.identity.store import IdentityStore
from gather.points.ledger import PointsLedger
from gather.points.rules import MILESTONES, SERVER_ONLY_ACTIONS, compute_level, get_rule
from gather.points.schemas import (
    AccountBreakdown,
    ActionAccepted,
    ActionRequest,
    AdjustRequest,
    AdjustResponse,
    HistoryEntry,
    HistoryResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    LevelEntry,
    LevelsResponse,
    PointsResponse,
)
from gather.tasks.queue import TaskQueue

router = APIRouter(prefix="/api/v1/points", tags=["Points"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin_key)])


@router.get("/me", response_model=PointsResponse)
async def my_points(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> PointsResponse:
    """Points aggregated across every account linked to the caller."""
    summary = await PointsLedger(db).aggregate(ctx.canonical_id)
    progress = compute_level(summary.points)
    return PointsResponse(
        canonical_id=summary.canonical_id,
        points=summary.points,
        streak=summary.streak,
        longest_streak=summary.longest_streak,
        level=summary.level,
        title=summary.title,
        next_threshold=progress["next_threshold"],
        points_to_next=progress["points_to_next"],
        accounts=[AccountBreakdown(**item) for item in summary.breakdown],
    )


@router.get("/history", response_model=HistoryResponse)
async def points_history(
    limit: int = Query(50, ge=1, le=200),
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> HistoryResponse:
    """Ledger entries of every linked account, newest first."""
    linked = await IdentityStore(db).linked_ids(ctx.canonical_id) or [ctx.platform_user_id]
    entries = await PointsLedger(db).history(linked, limit=limit)
    return HistoryResponse(entries=[
        HistoryEntry(
            id=e.id,
            platform_user_id=e.platform_user_id,
            action=e.action,
            points=e.points,
            details=e.details or {},
            created_at=e.created_at,
        )
        for e in entries
    ])


@router.get("/levels", response_model=LevelsResponse)
async def levels() -> LevelsResponse:
    return LevelsResponse(levels=[LevelEntry(**m) for m in MILESTONES])


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> LeaderboardResponse:
    rows = await PointsLedger(db).leaderboard(limit=limit)
    return LeaderboardResponse(entries=[LeaderboardEntry(**row) for row in rows])


@router.post("/actions", response_model=ActionAccepted, status_code=202)
async def report_action(
    body: ActionRequest,
    ctx: AuthContext = Depends(get_auth_context),
    tasks: TaskQueue = Depends(get_queue),
) -> ActionAccepted:
    """Queue an award for a client-reported action. Eligibility is decided by the worker."""
    if get_rule(body.action) is None or body.action in SERVER_ONLY_ACTIONS:
        msg = f"Unknown action: {body.action}"
        raise ValidationFailure(msg)
    key = f"client:{ctx.platform_user_id}:{body.idempotency_key}" if body.idempotency_key else None
    await tasks.enqueue("award_points", ctx.platform_user_id, ctx.platform, body.action, key)
    return ActionAccepted(action=body.action)


@admin_router.post("/points", response_model=AdjustResponse)
async def adjust_points(
    body: AdjustRequest,
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
) -> AdjustResponse:
    """Operator adjustment; negative deltas are clamped at zero."""
    platform = detect_platform(body.platform_user_id)
    result = await PointsLedger(db, redis).adjust(body.platform_user_id, platform.value, body.delta, body.reason)
    return AdjustResponse(platform_user_id=body.platform_user_id, applied=result.points, total=result.total)
