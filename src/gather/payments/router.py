"""Sponsorship API endpoints."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gather.auth.context import AuthContext
from gather.auth.dependencies import get_auth_context, require_admin_key
from gather.config import get_settings
from gather.database import get_session
from gather.db.models import Sponsorship
from gather.dependencies import get_chain, get_queue, get_redis_dep
from gather.errors import DependencyUnavailable
from gather.money import from_units
from gather.payments.chain import ChainClient
from gather.payments.schemas import (
    FeaturedResponse,
    RankedLocation,
    RankedLocationsResponse,
    RankingEntry,
    RankingsResponse,
    SponsorRequest,
    SponsorshipResponse,
    VerifyResponse,
    WalletResponse,
)
from gather.payments.verifier import PaymentVerifier, TargetType
from gather.tasks.queue import TaskQueue

router = APIRouter(prefix="/api/v1", tags=["Sponsorships"])


def _verifier(
    db: AsyncSession,
    chain: ChainClient,
    redis: object | None = None,
    tasks: TaskQueue | None = None,
) -> PaymentVerifier:
    settings = get_settings()
    return PaymentVerifier(
        db,
        chain,
        settings.payee_address,
        tasks=tasks,
        redis=redis,
        min_amount=settings.sponsorship_min_amount,
        ttl=timedelta(days=settings.sponsorship_ttl_days),
    )


def _require_payee() -> str:
    settings = get_settings()
    if not settings.payee_address:
        msg = "Payee wallet not configured"
        raise DependencyUnavailable(msg)
    return settings.payee_address


def _sponsorship_response(s: Sponsorship) -> SponsorshipResponse:
    return SponsorshipResponse(
        id=s.id,
        target_type=s.target_type,
        target_id=s.target_id,
        amount=from_units(s.amount_units),
        confirmed_amount=from_units(s.confirmed_units) if s.confirmed_units is not None else None,
        tx_reference=s.tx_reference,
        status=s.status,
        rejection_reason=s.rejection_reason,
        created_at=s.created_at,
        verified_at=s.verified_at,
        expires_at=s.expires_at,
    )


@router.get("/sponsor/wallet", response_model=WalletResponse)
async def sponsor_wallet() -> WalletResponse:
    """Where sponsors send USDC."""
    settings = get_settings()
    return WalletResponse(
        address=_require_payee(),
        chain=settings.chain_name,
        token_contract=settings.usdc_contract,
        min_amount=settings.sponsorship_min_amount,
    )


@router.post("/sponsor", response_model=SponsorshipResponse, status_code=201)
async def submit_sponsorship(
    body: SponsorRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
    redis: object | None = Depends(get_redis_dep),
    tasks: TaskQueue = Depends(get_queue),
) -> SponsorshipResponse:
    """Record a pending sponsorship; verification runs in the background."""
    _require_payee()
    verifier = _verifier(db, chain, redis, tasks)
    sponsorship = await verifier.submit(
        ctx.platform_user_id,
        ctx.platform,
        body.target_type.value,
        body.target_id,
        body.amount,
        body.tx_reference,
    )
    # Eager task queues may already have moved it on
    return _sponsorship_response(await verifier.get(sponsorship.id))


@router.get("/sponsor/rankings", response_model=RankingsResponse)
async def sponsor_rankings(
    target_type: TargetType | None = None,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
) -> RankingsResponse:
    rows = await _verifier(db, chain).rankings(target_type.value if target_type else None, limit=limit)
    return RankingsResponse(rankings=[RankingEntry(**row) for row in rows])


@router.get("/sponsor/featured", response_model=FeaturedResponse)
async def featured_sponsorship(
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
) -> FeaturedResponse:
    """Current holder of the featured-event slot."""
    featured = await _verifier(db, chain).featured()
    return FeaturedResponse(featured=_sponsorship_response(featured) if featured else None)


@router.get("/sponsor/{sponsorship_id}", response_model=SponsorshipResponse)
async def get_sponsorship(
    sponsorship_id: int,
    _ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
) -> SponsorshipResponse:
    return _sponsorship_response(await _verifier(db, chain).get(sponsorship_id))


@router.post(
    "/sponsor/{sponsorship_id}/verify",
    response_model=VerifyResponse,
    dependencies=[Depends(require_admin_key)],
)
async def reverify_sponsorship(
    sponsorship_id: int,
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
    redis: object | None = Depends(get_redis_dep),
) -> VerifyResponse:
    """Operator re-verification of a pending or rejected sponsorship."""
    _require_payee()
    verifier = _verifier(db, chain, redis)
    result = await verifier.reverify(sponsorship_id)
    return VerifyResponse(
        outcome=result.outcome.value,
        error=result.error,
        sponsorship=_sponsorship_response(await verifier.get(sponsorship_id)),
    )


@router.get("/locations/ranked", response_model=RankedLocationsResponse)
async def ranked_locations(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
) -> RankedLocationsResponse:
    """Locations by accumulated verified sponsorship."""
    rows = await _verifier(db, chain).ranked_locations(limit=limit)
    return RankedLocationsResponse(locations=[
        RankedLocation(
            location_id=row.location_id,
            total_usdc=from_units(row.total_units),
            sponsor_count=row.sponsor_count,
        )
        for row in rows
    ])
