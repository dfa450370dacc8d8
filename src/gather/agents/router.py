"""Agent marketplace API endpoints.

Insufficient balance answers 402 with a JSON body and a ``Payment-Required``
header describing what to pay and where.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gather.agents.ledger import AgentLedger, AgentStatus, LedgerResult
from gather.agents.payment import PaymentRequired
from gather.agents.schemas import (
    AgentActionResponse,
    AgentListResponse,
    AgentOut,
    BoostListResponse,
    BoostRequest,
    ClaimRequest,
    PrizeRequest,
    PurchaseRequest,
    RecommendRequest,
    SkillListResponse,
    TipRequest,
    TransactionListResponse,
    agent_out,
    boost_out,
    skill_out,
    transaction_out,
)
from gather.auth.context import AuthContext
from gather.auth.dependencies import get_auth_context, require_admin_key
from gather.config import get_settings
from gather.database import get_session
from gather.db.models import AgentAccount
from gather.dependencies import get_chain
from gather.errors import NotFoundError
from gather.identity.store import IdentityStore
from gather.payments.chain import ChainClient

router = APIRouter(prefix="/api/v1/agents", tags=["Agents"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin_key)])


def _ledger(db: AsyncSession, chain: ChainClient | None = None) -> AgentLedger:
    return AgentLedger.from_settings(db, get_settings(), chain)


async def _my_agent(ledger: AgentLedger, ctx: AuthContext) -> AgentAccount:
    agent = await ledger.agent_for(ctx.canonical_id)
    if agent is None:
        msg = "You don't have an agent yet"
        raise NotFoundError(msg)
    return agent


def _payment_response(required: PaymentRequired) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content=required.to_body(),
        headers={"Payment-Required": required.to_header()},
    )


def _action_response(result: LedgerResult | PaymentRequired) -> AgentActionResponse | JSONResponse:
    if isinstance(result, PaymentRequired):
        return _payment_response(result)
    return AgentActionResponse(
        agent=agent_out(result.agent),
        transaction=transaction_out(result.transaction) if result.transaction is not None else None,
        skill=skill_out(result.skill) if result.skill is not None else None,
        recipient=agent_out(result.recipient) if result.recipient is not None else None,
        boost=boost_out(result.boost) if result.boost is not None else None,
        product=result.product,
    )


@router.get("", response_model=AgentListResponse)
async def list_agents(db: AsyncSession = Depends(get_session)) -> AgentListResponse:
    """All slots, claimed or not."""
    agents = await _ledger(db).list_agents()
    return AgentListResponse(
        agents=[agent_out(a) for a in agents],
        open_slots=sum(1 for a in agents if a.status == AgentStatus.OPEN),
    )


@router.get("/me", response_model=AgentOut)
async def my_agent(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> AgentOut:
    return agent_out(await _my_agent(_ledger(db), ctx))


@router.get("/skills", response_model=SkillListResponse)
async def list_skills(db: AsyncSession = Depends(get_session)) -> SkillListResponse:
    return SkillListResponse(skills=[skill_out(s) for s in await _ledger(db).list_skills()])


@router.post("/claim", response_model=AgentOut, status_code=201)
async def claim_agent(
    body: ClaimRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> AgentOut:
    """Claim the first open slot for the caller's canonical identity."""
    identity = await IdentityStore(db).get(ctx.platform_user_id)
    display_name = identity.display_name if identity else None
    agent = await _ledger(db).claim(ctx.canonical_id, display_name, body.agent_name)
    return agent_out(agent)


@router.post("/skills/purchase", response_model=AgentActionResponse)
async def purchase_skill(
    body: PurchaseRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
    chain: ChainClient = Depends(get_chain),
):
    """Buy a skill from balance, or with ``tx_proof`` after paying on chain."""
    ledger = _ledger(db, chain)
    agent = await _my_agent(ledger, ctx)
    return _action_response(await ledger.purchase(agent.slot, body.skill, tx_proof=body.tx_proof))


@router.post("/boost-event", response_model=AgentActionResponse)
async def boost_event(
    body: BoostRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
):
    ledger = _ledger(db)
    agent = await _my_agent(ledger, ctx)
    return _action_response(await ledger.boost_event(agent.slot, body.event_id))


@router.post("/recommend", response_model=AgentActionResponse)
async def recommend(
    body: RecommendRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
):
    """Pay another agent for its owner's plans."""
    ledger = _ledger(db)
    agent = await _my_agent(ledger, ctx)
    return _action_response(await ledger.recommend(agent.slot, body.target_slot, body.query))


@router.post("/tip", response_model=AgentActionResponse)
async def tip(
    body: TipRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
):
    ledger = _ledger(db)
    agent = await _my_agent(ledger, ctx)
    return _action_response(await ledger.tip(agent.slot, body.target_slot, body.amount, body.message))


@router.get("/transactions", response_model=TransactionListResponse)
async def my_transactions(
    limit: int = Query(50, ge=1, le=200),
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_session),
) -> TransactionListResponse:
    ledger = _ledger(db)
    agent = await _my_agent(ledger, ctx)
    txs = await ledger.transactions(agent.slot, limit=limit)
    return TransactionListResponse(transactions=[transaction_out(tx) for tx in txs])


@router.get("/boosts", response_model=BoostListResponse)
async def active_boosts(db: AsyncSession = Depends(get_session)) -> BoostListResponse:
    """Boosts that have not expired yet."""
    return BoostListResponse(boosts=[boost_out(b) for b in await _ledger(db).active_boosts()])


@admin_router.post("/agents/prize", response_model=AgentActionResponse)
async def award_prize(
    body: PrizeRequest,
    db: AsyncSession = Depends(get_session),
) -> AgentActionResponse:
    result = await _ledger(db).prize(body.slot, body.amount, body.reason, body.awarded_by)
    return _action_response(result)  # type: ignore[return-value]
