"""Agent balance-and-transaction ledger.

Every balance change is a conditional update guarded by the row's
``version`` (and, for debits, ``balance >= amount``) and is committed
together with the single AgentTransaction that records it. A lost race
re-reads and retries; the balance therefore always equals credits minus
debits over the transaction log, and can never go negative.

Insufficient balance is returned as a ``PaymentRequired`` value.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gather.agents.activity import activity_snapshot
from gather.agents.payment import PaymentRequired
from gather.agents.transactions import (
    EventBoostDetails,
    PrizeDetails,
    RecommendationDetails,
    SeedDetails,
    SkillPurchaseDetails,
    TipDetails,
    TxType,
    dump_details,
)
from gather.config import Settings
from gather.db.base import utcnow
from gather.db.models import AgentAccount, AgentSkill, AgentTransaction, EventBoost, Sponsorship
from gather.errors import (
    ConflictError,
    DependencyUnavailable,
    InvariantViolation,
    NotFoundError,
    ValidationFailure,
)
from gather.money import from_units, to_units
from gather.payments.chain import ChainClient, Outcome, validate_tx_hash

logger = structlog.get_logger()

T = TypeVar("T")


class AgentStatus(StrEnum):
    OPEN = "open"
    RESERVED = "reserved"
    CLAIMED = "claimed"
    ACTIVE = "active"


class _StaleRead(Exception):
    """Conditional update matched no row; re-read and retry."""


@dataclass
class LedgerResult:
    agent: AgentAccount
    transaction: AgentTransaction | None
    skill: AgentSkill | None = None
    recipient: AgentAccount | None = None
    boost: EventBoost | None = None
    product: dict[str, Any] = field(default_factory=dict)


class AgentLedger:
    """Claim, purchase, boost, recommend, tip and prize over the fixed agent pool."""

    def __init__(
        self,
        db: AsyncSession,
        payee_address: str,
        *,
        chain: ChainClient | None = None,
        chain_name: str = "base",
        seed_balance: Decimal = Decimal("0.50"),
        starter_skill: str = "event-discovery",
        boost_price: Decimal = Decimal("0.50"),
        boost_duration: timedelta = timedelta(hours=24),
        recommendation_price: Decimal = Decimal("0.10"),
        tip_max: Decimal = Decimal("5.00"),
        cas_retries: int = 3,
    ) -> None:
        self.db = db
        self.payee_address = payee_address
        self.chain = chain
        self.chain_name = chain_name
        self.seed_balance = seed_balance
        self.starter_skill = starter_skill
        self.boost_price = boost_price
        self.boost_duration = boost_duration
        self.recommendation_price = recommendation_price
        self.tip_max = tip_max
        self.cas_retries = cas_retries

    @classmethod
    def from_settings(cls, db: AsyncSession, settings: Settings, chain: ChainClient | None = None) -> AgentLedger:
        return cls(
            db,
            settings.payee_address,
            chain=chain,
            chain_name=settings.chain_name,
            seed_balance=settings.agent_seed_balance,
            starter_skill=settings.agent_starter_skill,
            boost_price=settings.event_boost_price,
            boost_duration=timedelta(hours=settings.event_boost_duration_hours),
            recommendation_price=settings.recommendation_price,
            tip_max=settings.tip_max_amount,
            cas_retries=settings.ledger_cas_retries,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_agent(self, slot: int) -> AgentAccount:
        result = await self.db.execute(
            select(AgentAccount).where(AgentAccount.slot == slot).execution_options(populate_existing=True)
        )
        agent = result.scalar_one_or_none()
        if agent is None:
            msg = f"Agent {slot} not found"
            raise NotFoundError(msg)
        return agent

    async def agent_for(self, canonical_id: str) -> AgentAccount | None:
        result = await self.db.execute(
            select(AgentAccount)
            .where(AgentAccount.owner_identity == canonical_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_agents(self) -> list[AgentAccount]:
        result = await self.db.execute(
            select(AgentAccount).order_by(AgentAccount.slot.asc()).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_skill(self, slug: str) -> AgentSkill:
        skill = await self.db.get(AgentSkill, slug)
        if skill is None:
            msg = f"Skill {slug} not found"
            raise NotFoundError(msg)
        return skill

    async def list_skills(self) -> list[AgentSkill]:
        result = await self.db.execute(select(AgentSkill).order_by(AgentSkill.price_units.asc(), AgentSkill.slug))
        return list(result.scalars().all())

    async def transactions(self, slot: int, limit: int = 50) -> list[AgentTransaction]:
        result = await self.db.execute(
            select(AgentTransaction)
            .where(
                or_(
                    AgentTransaction.agent_slot == slot,
                    AgentTransaction.from_agent == slot,
                    AgentTransaction.to_agent == slot,
                )
            )
            .order_by(AgentTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def active_boosts(self, *, now: datetime | None = None) -> list[EventBoost]:
        now = now or utcnow()
        result = await self.db.execute(
            select(EventBoost).where(EventBoost.expires_at > now).order_by(EventBoost.expires_at.desc())
        )
        return list(result.scalars().all())

    async def audit_balance(self, slot: int) -> dict[str, Any]:
        """Recompute the balance from the transaction log and compare."""
        agent = await self.get_agent(slot)
        credits = await self.db.execute(
            select(func.coalesce(func.sum(AgentTransaction.amount_units), 0)).where(AgentTransaction.to_agent == slot)
        )
        debits = await self.db.execute(
            select(func.coalesce(func.sum(AgentTransaction.amount_units), 0)).where(AgentTransaction.from_agent == slot)
        )
        expected = int(credits.scalar_one()) - int(debits.scalar_one())
        return {
            "slot": slot,
            "balance": from_units(agent.balance_units),
            "expected": from_units(expected),
            "consistent": expected == agent.balance_units,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def claim(
        self,
        canonical_id: str,
        display_name: str | None = None,
        agent_name: str | None = None,
        *,
        now: datetime | None = None,
    ) -> AgentAccount:
        """Assign the first open slot, seed its balance and grant the starter skill."""
        if await self.agent_for(canonical_id) is not None:
            msg = "You already have an agent"
            raise ConflictError(msg)

        now = now or utcnow()
        seed_units = to_units(self.seed_balance)
        for _ in range(self.cas_retries):
            result = await self.db.execute(
                select(AgentAccount.slot, AgentAccount.version)
                .where(AgentAccount.status == AgentStatus.OPEN)
                .order_by(AgentAccount.slot.asc())
                .limit(1)
            )
            row = result.first()
            if row is None:
                msg = "No open agent slots"
                raise ConflictError(msg)

            try:
                claimed = await self.db.execute(
                    update(AgentAccount)
                    .where(
                        AgentAccount.slot == row.slot,
                        AgentAccount.status == AgentStatus.OPEN,
                        AgentAccount.version == row.version,
                    )
                    .values(
                        owner_identity=canonical_id,
                        owner_display_name=display_name,
                        agent_name=agent_name or (f"{display_name}'s Agent" if display_name else f"Agent #{row.slot}"),
                        status=AgentStatus.CLAIMED,
                        balance_units=seed_units,
                        total_earned_units=seed_units,
                        total_spent_units=0,
                        skills=[self.starter_skill],
                        version=AgentAccount.version + 1,
                        claimed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError:
                await self.db.rollback()
                msg = "You already have an agent"
                raise ConflictError(msg) from None
            if not claimed.rowcount:
                await self.db.rollback()
                continue

            if seed_units > 0:
                self._log(
                    TxType.SEED,
                    SeedDetails(starter_skill=self.starter_skill),
                    units=seed_units,
                    agent_slot=row.slot,
                    to_agent=row.slot,
                    now=now,
                )
            await self.db.commit()
            logger.info("agent_claimed", slot=row.slot, owner=canonical_id)
            return await self.get_agent(row.slot)

        msg = "Agent slots are contended, try again"
        raise ConflictError(msg)

    async def purchase(
        self,
        slot: int,
        skill_slug: str,
        *,
        tx_proof: str | None = None,
        now: datetime | None = None,
    ) -> LedgerResult | PaymentRequired:
        """Buy a skill from balance, or with an external on-chain payment proof."""
        now = now or utcnow()
        skill = await self.get_skill(skill_slug)
        slug, name, price_units = skill.slug, skill.name, skill.price_units
        if tx_proof is not None:
            return await self._purchase_with_proof(slot, slug, price_units, tx_proof, now)

        async def attempt() -> LedgerResult | PaymentRequired:
            agent = await self._owned_agent(slot)
            if slug in (agent.skills or []):
                msg = "Skill already owned"
                raise ConflictError(msg)
            if agent.balance_units < price_units:
                return self._payment_required(price_units, agent, f"skill:{slug}",
                                              f"Purchase {name}")
            await self._debit(agent, price_units, add_skill=slug, now=now)
            tx = self._log(
                TxType.SKILL_PURCHASE,
                SkillPurchaseDetails(skill=slug),
                units=price_units,
                agent_slot=slot,
                from_agent=slot,
                now=now,
            )
            return LedgerResult(agent=agent, transaction=tx)

        result = await self._with_retries(attempt)
        if isinstance(result, LedgerResult):
            result.agent = await self.get_agent(slot)
            result.skill = await self.get_skill(slug)
            logger.info("skill_purchased", slot=slot, skill=slug, price=str(from_units(price_units)))
        return result

    async def boost_event(self, slot: int, event_id: str, *, now: datetime | None = None) -> LedgerResult | PaymentRequired:
        """Pay to pin an event for the boost duration."""
        if not event_id:
            msg = "event_id is required"
            raise ValidationFailure(msg)
        now = now or utcnow()
        price = to_units(self.boost_price)

        async def attempt() -> LedgerResult | PaymentRequired:
            agent = await self._owned_agent(slot)
            if agent.balance_units < price:
                return self._payment_required(price, agent, f"event:{event_id}", "Boost event for 24h")
            await self._debit(agent, price, now=now)
            boost = EventBoost(
                agent_slot=slot,
                event_id=event_id,
                amount_units=price,
                expires_at=now + self.boost_duration,
                created_at=now,
            )
            self.db.add(boost)
            await self.db.flush()
            tx = self._log(
                TxType.EVENT_BOOST,
                EventBoostDetails(event_id=event_id, boost_id=boost.id, expires_at=boost.expires_at),
                units=price,
                agent_slot=slot,
                from_agent=slot,
                now=now,
            )
            return LedgerResult(agent=agent, transaction=tx, boost=boost)

        result = await self._with_retries(attempt)
        if isinstance(result, LedgerResult):
            result.agent = await self.get_agent(slot)
            logger.info("event_boosted", slot=slot, event_id=event_id)
        return result

    async def recommend(
        self,
        slot: int,
        target_slot: int,
        query: str | None = None,
        *,
        now: datetime | None = None,
    ) -> LedgerResult | PaymentRequired:
        """Pay another agent for its owner's upcoming schedule and latest check-in."""
        if slot == target_slot:
            msg = "Cannot ask your own agent for a recommendation"
            raise ValidationFailure(msg)
        now = now or utcnow()
        price = to_units(self.recommendation_price)
        target_owner = (await self._owned_agent(target_slot)).owner_identity or ""

        async def attempt() -> LedgerResult | PaymentRequired:
            agent = await self._owned_agent(slot)
            if agent.balance_units < price:
                return self._payment_required(price, agent, f"agent:{target_slot}:recommendation",
                                              "Agent recommendation")
            await self._debit(agent, price, now=now)
            await self._credit(target_slot, price, now=now)
            tx = self._log(
                TxType.RECOMMENDATION,
                RecommendationDetails(target_agent=target_slot, query=query),
                units=price,
                agent_slot=slot,
                from_agent=slot,
                to_agent=target_slot,
                now=now,
            )
            return LedgerResult(agent=agent, transaction=tx)

        result = await self._with_retries(attempt)
        if isinstance(result, LedgerResult):
            result.agent = await self.get_agent(slot)
            result.recipient = await self.get_agent(target_slot)
            result.product = await activity_snapshot(self.db, target_owner, now)
            logger.info("recommendation_purchased", slot=slot, target=target_slot)
        return result

    async def tip(
        self,
        slot: int,
        target_slot: int,
        amount: Decimal,
        message: str | None = None,
        *,
        now: datetime | None = None,
    ) -> LedgerResult | PaymentRequired:
        """Send USDC from one agent's balance to another's."""
        if slot == target_slot:
            msg = "Cannot tip your own agent"
            raise ValidationFailure(msg)
        if amount <= 0:
            msg = "Tip amount must be positive"
            raise ValidationFailure(msg)
        if amount > self.tip_max:
            msg = f"Maximum tip is {self.tip_max} USDC"
            raise ValidationFailure(msg)
        units = to_units(amount)
        if units <= 0:
            msg = "Tip amount below the smallest USDC unit"
            raise ValidationFailure(msg)
        now = now or utcnow()
        await self._owned_agent(target_slot)

        async def attempt() -> LedgerResult | PaymentRequired:
            agent = await self._owned_agent(slot)
            if agent.balance_units < units:
                return self._payment_required(units, agent, f"agent:{target_slot}:tip", "Tip")
            await self._debit(agent, units, now=now)
            await self._credit(target_slot, units, now=now)
            tx = self._log(
                TxType.TIP,
                TipDetails(message=message),
                units=units,
                agent_slot=slot,
                from_agent=slot,
                to_agent=target_slot,
                now=now,
            )
            return LedgerResult(agent=agent, transaction=tx)

        result = await self._with_retries(attempt)
        if isinstance(result, LedgerResult):
            result.agent = await self.get_agent(slot)
            result.recipient = await self.get_agent(target_slot)
            logger.info("agent_tipped", slot=slot, target=target_slot, amount=str(from_units(units)))
        return result

    async def prize(
        self,
        slot: int,
        amount: Decimal,
        reason: str,
        awarded_by: str | None = None,
        *,
        now: datetime | None = None,
    ) -> LedgerResult:
        """Operator credit to a claimed agent."""
        units = to_units(amount)
        if units <= 0:
            msg = "Prize amount must be positive"
            raise ValidationFailure(msg)
        now = now or utcnow()
        await self._owned_agent(slot)
        await self._credit(slot, units, now=now)
        tx = self._log(
            TxType.PRIZE,
            PrizeDetails(reason=reason, awarded_by=awarded_by),
            units=units,
            agent_slot=slot,
            to_agent=slot,
            now=now,
        )
        await self.db.commit()
        logger.info("agent_prize_awarded", slot=slot, amount=str(amount), reason=reason)
        return LedgerResult(agent=await self.get_agent(slot), transaction=tx)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _purchase_with_proof(self, slot: int, slug: str, price_units: int, tx_proof: str,
                                   now: datetime) -> LedgerResult:
        """Settle a purchase paid on chain: no balance moves, the tx hash is logged once."""
        tx_hash = validate_tx_hash(tx_proof)
        if self.chain is None:
            msg = "Chain verification is not configured"
            raise DependencyUnavailable(msg)
        agent = await self._owned_agent(slot)
        if slug in (agent.skills or []):
            msg = "Skill already owned"
            raise ConflictError(msg)

        used = await self.db.execute(
            select(AgentTransaction.id).where(AgentTransaction.tx_hash == tx_hash)
            .union_all(select(Sponsorship.id).where(Sponsorship.tx_reference == tx_hash))
        )
        if used.first() is not None:
            msg = "Payment proof already used"
            raise ConflictError(msg)

        verification = await self.chain.verify_transfer(tx_hash, self.payee_address, from_units(price_units))
        if verification.outcome == Outcome.INDETERMINATE:
            msg = "Could not confirm payment on chain, retry shortly"
            raise DependencyUnavailable(msg)
        if verification.outcome == Outcome.INVALID:
            raise ValidationFailure(verification.error or "Payment proof rejected")

        async def attempt() -> LedgerResult:
            current = await self._owned_agent(slot)
            if slug in (current.skills or []):
                msg = "Skill already owned"
                raise ConflictError(msg)
            values: dict[str, Any] = {"skills": [*(current.skills or []), slug]}
            if current.status == AgentStatus.CLAIMED:
                values["status"] = AgentStatus.ACTIVE
            await self._cas(current, values, now=now)
            tx = self._log(
                TxType.SKILL_PURCHASE,
                SkillPurchaseDetails(skill=slug, paid_with="tx_proof"),
                units=price_units,
                agent_slot=slot,
                tx_hash=tx_hash,
                now=now,
            )
            return LedgerResult(agent=current, transaction=tx)

        try:
            result = await self._with_retries(attempt)
        except IntegrityError:
            await self.db.rollback()
            msg = "Payment proof already used"
            raise ConflictError(msg) from None
        result.agent = await self.get_agent(slot)
        result.skill = await self.get_skill(slug)
        logger.info("skill_purchased", slot=slot, skill=slug, tx_hash=tx_hash)
        return result

    async def _owned_agent(self, slot: int) -> AgentAccount:
        agent = await self.get_agent(slot)
        if agent.owner_identity is None:
            msg = f"Agent {slot} is not claimed"
            raise ConflictError(msg)
        return agent

    async def _with_retries(self, attempt: Callable[[], Awaitable[T]]) -> T:
        """Run ``attempt`` and commit; re-run on a stale conditional update."""
        for _ in range(self.cas_retries):
            try:
                result = await attempt()
                if isinstance(result, PaymentRequired):
                    await self.db.rollback()
                else:
                    await self.db.commit()
            except _StaleRead:
                await self.db.rollback()
                continue
            except Exception:
                await self.db.rollback()
                raise
            return result
        msg = "Agent balance is contended, try again"
        raise ConflictError(msg)

    async def _cas(self, agent: AgentAccount, values: dict[str, Any], *, now: datetime,
                   min_balance: int = 0) -> None:
        stmt = (
            update(AgentAccount)
            .where(AgentAccount.slot == agent.slot, AgentAccount.version == agent.version)
            .values(version=AgentAccount.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if min_balance:
            stmt = stmt.where(AgentAccount.balance_units >= min_balance)
        result = await self.db.execute(stmt)
        if not result.rowcount:
            raise _StaleRead

    async def _debit(self, agent: AgentAccount, units: int, *, add_skill: str | None = None,
                     now: datetime) -> None:
        if units <= 0:
            msg = "Debit amount must be positive"
            raise InvariantViolation(msg)
        if agent.balance_units - units < 0:
            msg = "Debit would make the balance negative"
            raise InvariantViolation(msg)
        values: dict[str, Any] = {
            "balance_units": AgentAccount.balance_units - units,
            "total_spent_units": AgentAccount.total_spent_units + units,
        }
        if add_skill is not None:
            values["skills"] = [*(agent.skills or []), add_skill]
        if agent.status == AgentStatus.CLAIMED:
            values["status"] = AgentStatus.ACTIVE
        await self._cas(agent, values, now=now, min_balance=units)

    async def _credit(self, slot: int, units: int, *, now: datetime) -> None:
        if units <= 0:
            msg = "Credit amount must be positive"
            raise InvariantViolation(msg)
        result = await self.db.execute(
            update(AgentAccount)
            .where(AgentAccount.slot == slot, AgentAccount.owner_identity.is_not(None))
            .values(
                balance_units=AgentAccount.balance_units + units,
                total_earned_units=AgentAccount.total_earned_units + units,
                version=AgentAccount.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            msg = f"Agent {slot} is not claimed"
            raise ConflictError(msg)

    def _log(
        self,
        tx_type: TxType,
        details: BaseModel,
        *,
        units: int,
        agent_slot: int,
        now: datetime,
        from_agent: int | None = None,
        to_agent: int | None = None,
        tx_hash: str | None = None,
    ) -> AgentTransaction:
        if units <= 0:
            msg = "Transaction amount must be positive"
            raise InvariantViolation(msg)
        tx = AgentTransaction(
            agent_slot=agent_slot,
            from_agent=from_agent,
            to_agent=to_agent,
            amount_units=units,
            tx_type=tx_type.value,
            status="completed",
            details=dump_details(details),
            tx_hash=tx_hash,
            created_at=now,
        )
        self.db.add(tx)
        return tx

    def _payment_required(self, units: int, agent: AgentAccount, resource: str, description: str) -> PaymentRequired:
        logger.info("payment_required", slot=agent.slot, price=str(from_units(units)), resource=resource)
        return PaymentRequired(
            price=from_units(units),
            pay_to=self.payee_address,
            chain=self.chain_name,
            description=description,
            resource=resource,
            balance=from_units(agent.balance_units),
        )
