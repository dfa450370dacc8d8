"""Background jobs. Each opens its own database session.

Signatures follow arq: the first argument is the job context dict.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from arq import Retry

from gather.config import Settings, get_settings
from gather.database import get_session_factory
from gather.identity.provider import LinkageProvider
from gather.identity.resolver import IdentityResolver
from gather.payments.chain import ChainClient, Outcome
from gather.payments.verifier import PaymentVerifier
from gather.points.ledger import PointsLedger
from gather.redis_client import get_redis_or_none

logger = logging.getLogger(__name__)


def _settings(ctx: dict[str, Any]) -> Settings:
    return ctx.get("settings") or get_settings()


def _redis(ctx: dict[str, Any]) -> object | None:
    return ctx.get("redis") or get_redis_or_none()


def _sessions(ctx: dict[str, Any]) -> Any:
    return ctx.get("session_factory") or get_session_factory()


async def award_points(
    ctx: dict[str, Any],
    platform_user_id: str,
    platform: str,
    action: str,
    idempotency_key: str | None = None,
) -> bool:
    """Credit a bonus award. Failures are logged and swallowed."""
    try:
        async with _sessions(ctx)() as db:
            result = await PointsLedger(db, _redis(ctx)).award(
                platform_user_id, platform, action, idempotency_key=idempotency_key
            )
            return result.awarded
    except Exception:
        logger.warning("Points award %s for %s failed", action, platform_user_id, exc_info=True)
        return False


async def verify_sponsorship(ctx: dict[str, Any], sponsorship_id: int) -> str:
    """Verify a sponsorship on chain; retry later while the chain answer is indeterminate."""
    settings = _settings(ctx)
    chain = ctx.get("chain") or ChainClient.from_settings(settings)
    async with _sessions(ctx)() as db:
        verifier = PaymentVerifier(
            db,
            chain,
            settings.payee_address,
            redis=_redis(ctx),
            min_amount=settings.sponsorship_min_amount,
            ttl=timedelta(days=settings.sponsorship_ttl_days),
        )
        result = await verifier.verify(sponsorship_id)

    if result.outcome == Outcome.INDETERMINATE:
        job_try = ctx.get("job_try", 1)
        if job_try >= settings.verification_max_tries:
            logger.warning(
                "Sponsorship %d still unverified after %d tries; left pending for an operator",
                sponsorship_id, job_try,
            )
            return result.outcome.value
        logger.info("Sponsorship %d verification deferred (try %d): %s", sponsorship_id, job_try, result.error)
        raise Retry(defer=settings.verification_retry_delay_seconds * job_try)
    return result.outcome.value


async def reconcile_identities(ctx: dict[str, Any]) -> int:
    """Re-merge external auth ids whose identities are split across canonical ids."""
    settings = _settings(ctx)
    provider = ctx["provider"] if "provider" in ctx else LinkageProvider.from_settings(settings)
    async with _sessions(ctx)() as db:
        merged = await IdentityResolver(db, provider).reconcile()
    logger.info("Identity reconciliation merged %d external ids", merged)
    return merged


JOB_FUNCTIONS: dict[str, Any] = {
    "award_points": award_points,
    "verify_sponsorship": verify_sponsorship,
    "reconcile_identities": reconcile_identities,
}
