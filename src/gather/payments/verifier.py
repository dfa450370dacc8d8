"""Sponsorship submission and on-chain verification.

State machine: ``pending -> verified | rejected``. Transitions are
conditional updates on ``status = 'pending'`` so side effects run exactly
once even when two verifications race. An indeterminate chain answer leaves
the row pending for a later retry.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gather.db.base import utcnow
from gather.db.models import AgentTransaction, LocationSponsorTotal, Sponsorship
from gather.db.upsert import upsert
from gather.errors import ConflictError, NotFoundError, ValidationFailure
from gather.money import from_units, to_units
from gather.payments.chain import ChainClient, Outcome, VerificationResult, validate_tx_hash
from gather.points.ledger import PointsLedger
from gather.redis_client import publish_event
from gather.tasks.queue import TaskQueue

logger = structlog.get_logger()


class TargetType(StrEnum):
    EVENT = "event"
    LOCATION = "location"
    FEATURED_EVENT = "featured_event"


class SponsorshipStatus(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class PaymentVerifier:
    """Drives sponsorships from submission to a terminal state."""

    def __init__(
        self,
        db: AsyncSession,
        chain: ChainClient,
        payee_address: str,
        *,
        tasks: TaskQueue | None = None,
        redis: object | None = None,
        min_amount: Decimal = Decimal("0.10"),
        ttl: timedelta = timedelta(days=30),
    ) -> None:
        self.db = db
        self.chain = chain
        self.payee_address = payee_address
        self.tasks = tasks
        self.redis = redis
        self.min_amount = min_amount
        self.ttl = ttl

    async def submit(
        self,
        sponsor_identity: str,
        sponsor_platform: str,
        target_type: str,
        target_id: str,
        amount: Decimal,
        tx_reference: str,
        *,
        now: datetime | None = None,
    ) -> Sponsorship:
        """Persist a pending sponsorship and schedule its verification. Never waits on the chain."""
        try:
            target = TargetType(target_type)
        except ValueError:
            msg = f"Unknown target type: {target_type}"
            raise ValidationFailure(msg) from None
        if amount < self.min_amount:
            msg = f"Minimum sponsorship is {self.min_amount} USDC"
            raise ValidationFailure(msg)
        if not target_id:
            msg = "target_id is required"
            raise ValidationFailure(msg)
        tx_reference = validate_tx_hash(tx_reference)
        used = await self.db.execute(select(AgentTransaction.id).where(AgentTransaction.tx_hash == tx_reference))
        if used.first() is not None:
            msg = "Transaction already used as a payment proof"
            raise ConflictError(msg)

        now = now or utcnow()
        sponsorship = Sponsorship(
            sponsor_identity=sponsor_identity,
            sponsor_platform=sponsor_platform,
            target_type=target.value,
            target_id=target_id,
            amount_units=to_units(amount),
            tx_reference=tx_reference,
            status=SponsorshipStatus.PENDING.value,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(sponsorship)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            msg = "Transaction already submitted"
            raise ConflictError(msg) from None

        logger.info(
            "sponsorship_submitted",
            sponsorship_id=sponsorship.id,
            target_type=target.value,
            target_id=target_id,
            amount=str(amount),
        )
        if self.tasks is not None:
            await self.tasks.enqueue(
                "award_points",
                sponsor_identity,
                sponsor_platform,
                "sponsor_created",
                f"sponsorship:{sponsorship.id}:created",
            )
            await self.tasks.enqueue("verify_sponsorship", sponsorship.id)
        return sponsorship

    async def get(self, sponsorship_id: int) -> Sponsorship:
        result = await self.db.execute(
            select(Sponsorship)
            .where(Sponsorship.id == sponsorship_id)
            .execution_options(populate_existing=True)
        )
        sponsorship = result.scalar_one_or_none()
        if sponsorship is None:
            msg = "Sponsorship not found"
            raise NotFoundError(msg)
        return sponsorship

    async def verify(self, sponsorship_id: int, *, now: datetime | None = None) -> VerificationResult:
        """Check the claimed transfer on chain and move a pending sponsorship to its terminal state."""
        sponsorship = await self.get(sponsorship_id)
        if sponsorship.status != SponsorshipStatus.PENDING:
            return _terminal_result(sponsorship)

        claimed = from_units(sponsorship.amount_units)
        result = await self.chain.verify_transfer(sponsorship.tx_reference, self.payee_address, claimed)
        if result.outcome == Outcome.INDETERMINATE:
            logger.info("sponsorship_verification_deferred", sponsorship_id=sponsorship_id, error=result.error)
            return result

        now = now or utcnow()
        if result.outcome == Outcome.VALID:
            await self._mark_verified(sponsorship, result, now)
        else:
            await self._mark_rejected(sponsorship, result, now)
        return result

    async def reverify(self, sponsorship_id: int, *, now: datetime | None = None) -> VerificationResult:
        """Operator path back into the pipeline; only from pending or rejected."""
        sponsorship = await self.get(sponsorship_id)
        if sponsorship.status == SponsorshipStatus.VERIFIED:
            msg = "Sponsorship already verified"
            raise ConflictError(msg)
        if sponsorship.status == SponsorshipStatus.REJECTED:
            await self.db.execute(
                update(Sponsorship)
                .where(Sponsorship.id == sponsorship_id, Sponsorship.status == SponsorshipStatus.REJECTED.value)
                .values(status=SponsorshipStatus.PENDING.value, rejection_reason=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.info("sponsorship_reopened", sponsorship_id=sponsorship_id)
        return await self.verify(sponsorship_id, now=now)

    async def _mark_verified(self, sponsorship: Sponsorship, result: VerificationResult, now: datetime) -> None:
        sponsorship_id = sponsorship.id
        confirmed = result.confirmed_amount or Decimal(0)
        transition = await self.db.execute(
            update(Sponsorship)
            .where(Sponsorship.id == sponsorship.id, Sponsorship.status == SponsorshipStatus.PENDING.value)
            .values(
                status=SponsorshipStatus.VERIFIED.value,
                confirmed_units=to_units(confirmed),
                verified_at=now,
                rejection_reason=None,
            )
            .execution_options(synchronize_session=False)
        )
        if not transition.rowcount:
            await self.db.rollback()
            return

        if sponsorship.target_type == TargetType.LOCATION:
            await upsert(
                self.db,
                LocationSponsorTotal,
                {
                    "location_id": sponsorship.target_id,
                    "total_units": sponsorship.amount_units,
                    "sponsor_count": 1,
                    "updated_at": now,
                },
                index_elements=["location_id"],
                set_={
                    "total_units": LocationSponsorTotal.total_units + sponsorship.amount_units,
                    "sponsor_count": LocationSponsorTotal.sponsor_count + 1,
                    "updated_at": now,
                },
            )
        await self.db.commit()

        logger.info(
            "sponsorship_verified",
            sponsorship_id=sponsorship.id,
            target_type=sponsorship.target_type,
            target_id=sponsorship.target_id,
            confirmed=str(confirmed),
        )
        await publish_event(self.redis, "pubsub:sponsorship_verified", {
            "sponsorship_id": sponsorship.id,
            "target_type": sponsorship.target_type,
            "target_id": sponsorship.target_id,
            "amount": str(from_units(sponsorship.amount_units)),
        })

        try:
            await PointsLedger(self.db, self.redis).award(
                sponsorship.sponsor_identity,
                sponsorship.sponsor_platform,
                "sponsor_verified",
                {"sponsorship_id": sponsorship.id},
                idempotency_key=f"sponsorship:{sponsorship.id}:verified",
                now=now,
            )
        except Exception:
            await self.db.rollback()
            logger.warning("sponsor_verified_award_failed", sponsorship_id=sponsorship_id, exc_info=True)

    async def _mark_rejected(self, sponsorship: Sponsorship, result: VerificationResult, now: datetime) -> None:
        transition = await self.db.execute(
            update(Sponsorship)
            .where(Sponsorship.id == sponsorship.id, Sponsorship.status == SponsorshipStatus.PENDING.value)
            .values(
                status=SponsorshipStatus.REJECTED.value,
                confirmed_units=to_units(result.confirmed_amount) if result.confirmed_amount is not None else None,
                rejection_reason=result.error,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if transition.rowcount:
            logger.info("sponsorship_rejected", sponsorship_id=sponsorship.id, reason=result.error)

    async def featured(self, *, now: datetime | None = None) -> Sponsorship | None:
        """Current featured-event holder: highest verified unexpired bid, earliest verification wins ties."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Sponsorship)
            .where(
                Sponsorship.target_type == TargetType.FEATURED_EVENT.value,
                Sponsorship.status == SponsorshipStatus.VERIFIED.value,
                Sponsorship.expires_at > now,
            )
            .order_by(Sponsorship.amount_units.desc(), Sponsorship.verified_at.asc(), Sponsorship.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def rankings(self, target_type: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        """Verified totals per target, highest first."""
        stmt = (
            select(
                Sponsorship.target_type,
                Sponsorship.target_id,
                func.sum(Sponsorship.amount_units).label("total_units"),
                func.count(Sponsorship.id).label("sponsor_count"),
            )
            .where(Sponsorship.status == SponsorshipStatus.VERIFIED.value)
            .group_by(Sponsorship.target_type, Sponsorship.target_id)
            .order_by(func.sum(Sponsorship.amount_units).desc())
            .limit(limit)
        )
        if target_type is not None:
            stmt = stmt.where(Sponsorship.target_type == target_type)
        result = await self.db.execute(stmt)
        return [
            {
                "target_type": row.target_type,
                "target_id": row.target_id,
                "total_usdc": from_units(int(row.total_units or 0)),
                "sponsor_count": int(row.sponsor_count),
            }
            for row in result.all()
        ]

    async def ranked_locations(self, limit: int = 20) -> list[LocationSponsorTotal]:
        result = await self.db.execute(
            select(LocationSponsorTotal)
            .where(LocationSponsorTotal.total_units > 0)
            .order_by(LocationSponsorTotal.total_units.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


def _terminal_result(sponsorship: Sponsorship) -> VerificationResult:
    confirmed = from_units(sponsorship.confirmed_units) if sponsorship.confirmed_units is not None else None
    if sponsorship.status == SponsorshipStatus.VERIFIED:
        return VerificationResult(Outcome.VALID, confirmed_amount=confirmed)
    return VerificationResult(Outcome.INVALID, confirmed_amount=confirmed, error=sponsorship.rejection_reason)
