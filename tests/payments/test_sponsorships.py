"""Sponsorship submission, verification state machine and rankings."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from arq import Retry
from sqlalchemy.ext.asyncio import AsyncSession

from gather.config import get_settings
from gather.db.models import AgentTransaction
from gather.errors import ConflictError, ValidationFailure
from gather.payments.chain import ChainClient, Outcome
from gather.payments.verifier import PaymentVerifier, SponsorshipStatus
from gather.points.ledger import PointsLedger
from gather.tasks.jobs import verify_sponsorship
from gather.tasks.queue import InlineTaskQueue
from helpers import PAYEE, ChainStub, tx_hash, usdc_receipt

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def verifier(db_session: AsyncSession, chain: ChainClient) -> PaymentVerifier:
    return PaymentVerifier(db_session, chain, PAYEE)


async def _submit(verifier: PaymentVerifier, n: int, amount: str = "1", target_type: str = "event",
                  target_id: str = "evt-1", sponsor: str = "telegram_1"):
    return await verifier.submit(sponsor, "telegram", target_type, target_id, Decimal(amount), tx_hash(n), now=NOW)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_is_pending(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        sponsorship = await _submit(verifier, 1)
        assert sponsorship.status == SponsorshipStatus.PENDING
        assert sponsorship.amount_units == 1_000_000
        assert sponsorship.expires_at == NOW + timedelta(days=30)
        assert chain_stub.calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("target_type", "target_id", "amount", "tx"),
        [
            ("billboard", "evt-1", "1", tx_hash(1)),
            ("event", "evt-1", "0.05", tx_hash(1)),
            ("event", "", "1", tx_hash(1)),
            ("event", "evt-1", "1", "0xnothex"),
        ],
    )
    async def test_rejects_bad_input(self, verifier: PaymentVerifier, target_type, target_id, amount, tx):
        with pytest.raises(ValidationFailure):
            await verifier.submit("telegram_1", "telegram", target_type, target_id, Decimal(amount), tx)

    @pytest.mark.asyncio
    async def test_duplicate_tx_reference(self, verifier: PaymentVerifier):
        await _submit(verifier, 1)
        with pytest.raises(ConflictError):
            await _submit(verifier, 1, target_id="evt-2")

    @pytest.mark.asyncio
    async def test_tx_used_as_agent_proof(self, db_session: AsyncSession, verifier: PaymentVerifier):
        db_session.add(AgentTransaction(
            agent_slot=1, tx_type="skill_purchase", amount_units=1,
            tx_hash=tx_hash(1), details={}, created_at=NOW,
        ))
        await db_session.commit()
        with pytest.raises(ConflictError):
            await _submit(verifier, 1)


class TestVerify:
    @pytest.mark.asyncio
    async def test_valid_transfer_verifies(self, db_session: AsyncSession, verifier: PaymentVerifier,
                                           chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=1_000_000)
        sponsorship = await _submit(verifier, 1)

        result = await verifier.verify(sponsorship.id, now=NOW)
        assert result.outcome == Outcome.VALID

        row = await verifier.get(sponsorship.id)
        assert row.status == SponsorshipStatus.VERIFIED
        assert row.confirmed_units == 1_000_000
        assert row.verified_at is not None

        account = await PointsLedger(db_session).get_account("telegram_1")
        assert account.total_points == 15

    @pytest.mark.asyncio
    async def test_verify_is_idempotent(self, db_session: AsyncSession, verifier: PaymentVerifier,
                                        chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt()
        sponsorship = await _submit(verifier, 1)
        await verifier.verify(sponsorship.id, now=NOW)
        calls = chain_stub.calls

        again = await verifier.verify(sponsorship.id, now=NOW)
        assert again.outcome == Outcome.VALID
        assert chain_stub.calls == calls
        assert (await PointsLedger(db_session).get_account("telegram_1")).total_points == 15

    @pytest.mark.asyncio
    async def test_indeterminate_stays_pending(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        chain_stub.unavailable = True
        sponsorship = await _submit(verifier, 1)
        result = await verifier.verify(sponsorship.id, now=NOW)
        assert result.outcome == Outcome.INDETERMINATE
        assert (await verifier.get(sponsorship.id)).status == SponsorshipStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_transfer_rejected(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=500_000)
        sponsorship = await _submit(verifier, 1)
        result = await verifier.verify(sponsorship.id, now=NOW)
        assert result.outcome == Outcome.INVALID

        row = await verifier.get(sponsorship.id)
        assert row.status == SponsorshipStatus.REJECTED
        assert row.confirmed_units == 500_000
        assert row.rejection_reason

    @pytest.mark.asyncio
    async def test_reverify_rejected(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        sponsorship = await _submit(verifier, 1)
        await verifier.verify(sponsorship.id, now=NOW)
        assert (await verifier.get(sponsorship.id)).status == SponsorshipStatus.REJECTED

        # The transaction lands after the first check
        chain_stub.receipts[tx_hash(1)] = usdc_receipt()
        result = await verifier.reverify(sponsorship.id, now=NOW)
        assert result.outcome == Outcome.VALID
        row = await verifier.get(sponsorship.id)
        assert row.status == SponsorshipStatus.VERIFIED
        assert row.rejection_reason is None

    @pytest.mark.asyncio
    async def test_reverify_verified_conflicts(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt()
        sponsorship = await _submit(verifier, 1)
        await verifier.verify(sponsorship.id, now=NOW)
        with pytest.raises(ConflictError):
            await verifier.reverify(sponsorship.id, now=NOW)

    @pytest.mark.asyncio
    async def test_location_totals(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        for n, units in ((1, 2_000_000), (2, 3_000_000)):
            chain_stub.receipts[tx_hash(n)] = usdc_receipt(amount_units=units)
            sponsorship = await _submit(verifier, n, amount=str(units // 1_000_000), target_type="location",
                                        target_id="loc-1")
            await verifier.verify(sponsorship.id, now=NOW)

        (total,) = await verifier.ranked_locations()
        assert total.location_id == "loc-1"
        assert total.total_units == 5_000_000
        assert total.sponsor_count == 2


class TestQueries:
    @pytest.mark.asyncio
    async def test_featured_highest_unexpired_bid(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        for n, amount in ((1, "2"), (2, "5"), (3, "3")):
            chain_stub.receipts[tx_hash(n)] = usdc_receipt(amount_units=int(amount) * 1_000_000)
            sponsorship = await _submit(verifier, n, amount=amount, target_type="featured_event",
                                        target_id=f"evt-{n}")
            await verifier.verify(sponsorship.id, now=NOW)

        featured = await verifier.featured(now=NOW + timedelta(days=1))
        assert featured.target_id == "evt-2"
        assert await verifier.featured(now=NOW + timedelta(days=31)) is None

    @pytest.mark.asyncio
    async def test_pending_bid_is_not_featured(self, verifier: PaymentVerifier):
        await _submit(verifier, 1, target_type="featured_event")
        assert await verifier.featured(now=NOW) is None

    @pytest.mark.asyncio
    async def test_rankings_count_verified_only(self, verifier: PaymentVerifier, chain_stub: ChainStub):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=1_000_000)
        chain_stub.receipts[tx_hash(2)] = usdc_receipt(amount_units=4_000_000)
        first = await _submit(verifier, 1, target_id="evt-a")
        second = await _submit(verifier, 2, amount="4", target_id="evt-b")
        await _submit(verifier, 3, amount="9", target_id="evt-c")
        await verifier.verify(first.id, now=NOW)
        await verifier.verify(second.id, now=NOW)

        rankings = await verifier.rankings("event")
        assert [r["target_id"] for r in rankings] == ["evt-b", "evt-a"]
        assert rankings[0]["total_usdc"] == Decimal("4")
        assert await verifier.rankings("location") == []


class TestVerificationJob:
    @pytest.mark.asyncio
    async def test_submit_schedules_verification(self, db_session: AsyncSession, chain: ChainClient,
                                                 chain_stub: ChainStub, task_queue: InlineTaskQueue):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt()
        verifier = PaymentVerifier(db_session, chain, PAYEE, tasks=task_queue)
        sponsorship = await verifier.submit("telegram_1", "telegram", "event", "evt-1", Decimal("1"), tx_hash(1))

        assert (await verifier.get(sponsorship.id)).status == SponsorshipStatus.VERIFIED
        # sponsor_created plus sponsor_verified
        assert (await PointsLedger(db_session).get_account("telegram_1")).total_points == 20

    @pytest.mark.asyncio
    async def test_indeterminate_asks_for_retry(self, verifier: PaymentVerifier, chain: ChainClient,
                                                chain_stub: ChainStub):
        chain_stub.unavailable = True
        sponsorship = await _submit(verifier, 1)
        ctx = {"chain": chain, "settings": get_settings(), "job_try": 1}
        with pytest.raises(Retry):
            await verify_sponsorship(ctx, sponsorship.id)

    @pytest.mark.asyncio
    async def test_gives_up_after_last_try(self, verifier: PaymentVerifier, chain: ChainClient,
                                           chain_stub: ChainStub):
        chain_stub.unavailable = True
        sponsorship = await _submit(verifier, 1)
        settings = get_settings()
        ctx = {"chain": chain, "settings": settings, "job_try": settings.verification_max_tries}
        assert await verify_sponsorship(ctx, sponsorship.id) == "indeterminate"
        assert (await verifier.get(sponsorship.id)).status == SponsorshipStatus.PENDING
