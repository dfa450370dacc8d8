"""Agent marketplace ledger: claims, purchases, transfers and balance audit."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from gather.agents.ledger import AgentLedger, AgentStatus
from gather.agents.payment import PaymentRequired
from gather.agents.seed import seed_skills, seed_slots
from gather.db.models import Checkin, ScheduleEntry
from gather.errors import ConflictError, DependencyUnavailable, NotFoundError, ValidationFailure
from gather.money import from_units
from gather.payments.chain import ChainClient
from helpers import PAYEE, ChainStub, tx_hash, usdc_receipt

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def ledger(db_session: AsyncSession, chain: ChainClient) -> AgentLedger:
    await seed_slots(db_session, 4, {4: "top_points"})
    await seed_skills(db_session)
    return AgentLedger(db_session, PAYEE, chain=chain)


def balance(agent) -> Decimal:
    return from_units(agent.balance_units)


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_seeds_first_open_slot(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", display_name="Ada", now=NOW)
        assert agent.slot == 1
        assert agent.status == AgentStatus.CLAIMED
        assert agent.agent_name == "Ada's Agent"
        assert agent.skills == ["event-discovery"]
        assert balance(agent) == Decimal("0.50")
        assert from_units(agent.total_earned_units) == Decimal("0.50")

        (seed,) = await ledger.transactions(agent.slot)
        assert seed.tx_type == "seed"
        assert seed.to_agent == 1

    @pytest.mark.asyncio
    async def test_one_agent_per_person(self, ledger: AgentLedger):
        await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(ConflictError):
            await ledger.claim("telegram_1", now=NOW)

    @pytest.mark.asyncio
    async def test_reserved_slots_are_not_claimable(self, ledger: AgentLedger):
        slots = [(await ledger.claim(f"telegram_{i}", now=NOW)).slot for i in range(3)]
        assert slots == [1, 2, 3]
        with pytest.raises(ConflictError):
            await ledger.claim("telegram_99", now=NOW)
        assert (await ledger.get_agent(4)).status == AgentStatus.RESERVED


class TestPurchase:
    @pytest.mark.asyncio
    async def test_purchase_from_balance(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        result = await ledger.purchase(agent.slot, "social-connector", now=NOW)

        assert not isinstance(result, PaymentRequired)
        assert balance(result.agent) == Decimal("0.40")
        assert from_units(result.agent.total_spent_units) == Decimal("0.10")
        assert "social-connector" in result.agent.skills
        assert result.agent.status == AgentStatus.ACTIVE
        assert result.skill.slug == "social-connector"

    @pytest.mark.asyncio
    async def test_owned_skill_conflicts(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(ConflictError):
            await ledger.purchase(agent.slot, "event-discovery", now=NOW)

    @pytest.mark.asyncio
    async def test_insufficient_balance_requires_payment(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        await ledger.purchase(agent.slot, "social-connector", now=NOW)

        result = await ledger.purchase(agent.slot, "event-boost", now=NOW)
        assert isinstance(result, PaymentRequired)
        assert result.price == Decimal("0.50")
        assert result.balance == Decimal("0.40")
        assert result.pay_to == PAYEE

        after = await ledger.get_agent(agent.slot)
        assert balance(after) == Decimal("0.40")
        assert "event-boost" not in after.skills
        assert len(await ledger.transactions(agent.slot)) == 2

    @pytest.mark.asyncio
    async def test_unknown_skill(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(NotFoundError):
            await ledger.purchase(agent.slot, "mind-reading", now=NOW)

    @pytest.mark.asyncio
    async def test_unclaimed_agent(self, ledger: AgentLedger):
        with pytest.raises(ConflictError):
            await ledger.purchase(2, "social-connector", now=NOW)


class TestPurchaseWithProof:
    @pytest.mark.asyncio
    async def test_valid_proof_grants_skill_without_debit(self, ledger: AgentLedger, chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=500_000)
        agent = await ledger.claim("telegram_1", now=NOW)

        result = await ledger.purchase(agent.slot, "event-boost", tx_proof=tx_hash(1), now=NOW)
        assert "event-boost" in result.agent.skills
        assert balance(result.agent) == Decimal("0.50")
        assert result.agent.status == AgentStatus.ACTIVE
        assert result.transaction.tx_hash == tx_hash(1)
        assert (await ledger.audit_balance(agent.slot))["consistent"] is True

    @pytest.mark.asyncio
    async def test_reused_proof(self, ledger: AgentLedger, chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=500_000)
        first = await ledger.claim("telegram_1", now=NOW)
        second = await ledger.claim("telegram_2", now=NOW)
        await ledger.purchase(first.slot, "event-boost", tx_proof=tx_hash(1), now=NOW)
        with pytest.raises(ConflictError):
            await ledger.purchase(second.slot, "event-boost", tx_proof=tx_hash(1), now=NOW)

    @pytest.mark.asyncio
    async def test_short_payment_rejected(self, ledger: AgentLedger, chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=100_000)
        agent = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(ValidationFailure):
            await ledger.purchase(agent.slot, "event-boost", tx_proof=tx_hash(1), now=NOW)
        assert "event-boost" not in (await ledger.get_agent(agent.slot)).skills

    @pytest.mark.asyncio
    async def test_chain_unavailable(self, ledger: AgentLedger, chain_stub: ChainStub):
        chain_stub.unavailable = True
        agent = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(DependencyUnavailable):
            await ledger.purchase(agent.slot, "event-boost", tx_proof=tx_hash(1), now=NOW)


class TestBoost:
    @pytest.mark.asyncio
    async def test_boost_spends_balance(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        result = await ledger.boost_event(agent.slot, "evt-1", now=NOW)

        assert balance(result.agent) == Decimal("0")
        assert result.boost.event_id == "evt-1"
        assert [b.event_id for b in await ledger.active_boosts(now=NOW + timedelta(hours=23))] == ["evt-1"]
        assert await ledger.active_boosts(now=NOW + timedelta(hours=25)) == []

        again = await ledger.boost_event(agent.slot, "evt-2", now=NOW)
        assert isinstance(again, PaymentRequired)
        assert again.resource == "event:evt-2"

    @pytest.mark.asyncio
    async def test_event_id_required(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(ValidationFailure):
            await ledger.boost_event(agent.slot, "", now=NOW)


class TestTransfers:
    @pytest.mark.asyncio
    async def test_recommendation_pays_target_and_returns_activity(self, db_session: AsyncSession,
                                                                   ledger: AgentLedger):
        asker = await ledger.claim("telegram_1", now=NOW)
        target = await ledger.claim("telegram_2", now=NOW)
        db_session.add(ScheduleEntry(
            user_id="telegram_2", event_id="evt-9", event_title="Rooftop", venue_name="Roof",
            starts_at=NOW + timedelta(days=1), created_at=NOW,
        ))
        db_session.add(Checkin(user_id="telegram_2", venue_name="Main Hall", status="here",
                               created_at=NOW - timedelta(hours=1)))
        await db_session.commit()

        result = await ledger.recommend(asker.slot, target.slot, "parties", now=NOW)
        assert balance(result.agent) == Decimal("0.40")
        assert balance(result.recipient) == Decimal("0.60")
        assert [e["event_id"] for e in result.product["upcoming"]] == ["evt-9"]
        assert result.product["latest_checkin"]["venue"] == "Main Hall"

    @pytest.mark.asyncio
    async def test_recommend_self_rejected(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(ValidationFailure):
            await ledger.recommend(agent.slot, agent.slot, now=NOW)

    @pytest.mark.asyncio
    async def test_tip(self, ledger: AgentLedger):
        sender = await ledger.claim("telegram_1", now=NOW)
        receiver = await ledger.claim("telegram_2", now=NOW)
        result = await ledger.tip(sender.slot, receiver.slot, Decimal("0.25"), "thanks", now=NOW)
        assert balance(result.agent) == Decimal("0.25")
        assert balance(result.recipient) == Decimal("0.75")

        broke = await ledger.tip(sender.slot, receiver.slot, Decimal("1.00"), now=NOW)
        assert isinstance(broke, PaymentRequired)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1", "5.01", "0.0000001"])
    async def test_tip_amount_bounds(self, ledger: AgentLedger, amount: str):
        sender = await ledger.claim("telegram_1", now=NOW)
        receiver = await ledger.claim("telegram_2", now=NOW)
        with pytest.raises(ValidationFailure):
            await ledger.tip(sender.slot, receiver.slot, Decimal(amount), now=NOW)

    @pytest.mark.asyncio
    async def test_tip_unclaimed_target(self, ledger: AgentLedger):
        sender = await ledger.claim("telegram_1", now=NOW)
        with pytest.raises(ConflictError):
            await ledger.tip(sender.slot, 3, Decimal("0.10"), now=NOW)
        assert balance(await ledger.get_agent(sender.slot)) == Decimal("0.50")


class TestPrizeAndAudit:
    @pytest.mark.asyncio
    async def test_prize_credits_balance(self, ledger: AgentLedger):
        agent = await ledger.claim("telegram_1", now=NOW)
        result = await ledger.prize(agent.slot, Decimal("2"), "hackathon winner", "admin", now=NOW)
        assert balance(result.agent) == Decimal("2.50")
        assert from_units(result.agent.total_earned_units) == Decimal("2.50")
        with pytest.raises(ValidationFailure):
            await ledger.prize(agent.slot, Decimal("0"), "nothing", now=NOW)

    @pytest.mark.asyncio
    async def test_balances_match_transaction_log(self, ledger: AgentLedger):
        a = await ledger.claim("telegram_1", now=NOW)
        b = await ledger.claim("telegram_2", now=NOW)
        await ledger.prize(a.slot, Decimal("1"), "quiz", now=NOW)
        await ledger.purchase(a.slot, "vibe-check", now=NOW)
        await ledger.boost_event(a.slot, "evt-1", now=NOW)
        await ledger.recommend(b.slot, a.slot, now=NOW)
        await ledger.tip(a.slot, b.slot, Decimal("0.33"), now=NOW)
        await ledger.purchase(b.slot, "event-boost", now=NOW)

        for slot in (a.slot, b.slot):
            audit = await ledger.audit_balance(slot)
            assert audit["consistent"] is True, audit
            assert audit["balance"] >= 0


class TestMarketplaceScenario:
    @pytest.mark.asyncio
    async def test_spend_down_to_payment_required(self, db_session: AsyncSession, chain: ChainClient):
        await seed_slots(db_session, 2, {})
        await seed_skills(db_session, [
            {"slug": slug, "name": slug.title(), "description": "", "price": price, "category": "utility",
             "capabilities": []}
            for slug, price in (("event-discovery", "0.05"), ("map-pro", "0.30"), ("night-owl", "0.25"))
        ])
        ledger = AgentLedger(db_session, PAYEE, chain=chain)
        a = await ledger.claim("telegram_1", now=NOW)
        b = await ledger.claim("telegram_2", now=NOW)

        bought = await ledger.purchase(a.slot, "map-pro", now=NOW)
        assert balance(bought.agent) == Decimal("0.20")
        assert bought.agent.skills == ["event-discovery", "map-pro"]

        required = await ledger.purchase(a.slot, "night-owl", now=NOW)
        assert isinstance(required, PaymentRequired)
        assert required.price == Decimal("0.25")

        tipped = await ledger.tip(a.slot, b.slot, Decimal("0.20"), now=NOW)
        assert balance(tipped.agent) == Decimal("0")
        assert balance(tipped.recipient) == Decimal("0.70")

        assert isinstance(await ledger.purchase(a.slot, "night-owl", now=NOW), PaymentRequired)
        for slot in (a.slot, b.slot):
            assert (await ledger.audit_balance(slot))["consistent"] is True
