"""Liveness, readiness and version endpoints.

Readiness covers everything a payment or agent request depends on: the
database, the chain RPC node, a configured payee wallet and a seeded agent
pool. Redis only backs rate limiting and event fan-out, so its absence
degrades the service without taking it out of rotation.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from gather.config import get_settings
from gather.database import get_session
from gather.db.models import AgentAccount, AgentSkill
from gather.dependencies import get_chain
from gather.payments.chain import ChainClient, is_address
from gather.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
    chain: ChainClient = Depends(get_chain),  # noqa: B008
) -> dict[str, object]:
    settings = get_settings()
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"
    else:
        slots = (await db.execute(select(func.count()).select_from(AgentAccount))).scalar_one()
        skills = (await db.execute(select(func.count()).select_from(AgentSkill))).scalar_one()
        if slots >= settings.agent_slot_count and skills:
            checks["agent_pool"] = "ok"
        else:
            checks["agent_pool"] = f"error: {slots}/{settings.agent_slot_count} slots, {skills} skills seeded"

    try:
        redis = get_redis()
        await redis.ping()
        checks["redis"] = "ok"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    try:
        checks["latest_block"] = await chain.block_number()
        checks["chain"] = "ok"
    except Exception as exc:
        checks["chain"] = f"error: {exc}"

    checks["payee"] = "ok" if is_address(settings.payee_address) else "error: payee address not configured"

    status_checks = [v for k, v in checks.items() if k != "latest_block"]
    all_ok = all(v == "ok" for v in status_checks)
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
        "chain": settings.chain_name,
    }
