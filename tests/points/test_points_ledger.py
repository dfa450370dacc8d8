"""Points awards, eligibility, streaks, pending claims and aggregation."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from gather.identity.resolver import IdentityResolver, ResolveHints
from gather.points.ledger import PendingAction, PointsLedger
from gather.points.rules import REWARD_RULES, RewardRule

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


@pytest.fixture
def ledger(db_session: AsyncSession) -> PointsLedger:
    return PointsLedger(db_session)


class TestAward:
    @pytest.mark.asyncio
    async def test_basic_award(self, ledger: PointsLedger):
        result = await ledger.award("telegram_1", "telegram", "daily_login", now=NOW)
        assert result.awarded is True
        assert result.points == 5
        assert result.total == 5
        assert result.streak == 1

        account = await ledger.get_account("telegram_1")
        assert account.total_points == 5
        assert account.platform == "telegram"

    @pytest.mark.asyncio
    async def test_unknown_action_credits_nothing(self, ledger: PointsLedger):
        result = await ledger.award("telegram_1", "telegram", "made_up", now=NOW)
        assert result.awarded is False
        assert result.reason == "unknown_action"
        assert await ledger.get_account("telegram_1") is None

    @pytest.mark.asyncio
    async def test_once_actions(self, ledger: PointsLedger):
        first = await ledger.award("telegram_1", "telegram", "onboarding_complete", now=NOW)
        second = await ledger.award("telegram_1", "telegram", "onboarding_complete", now=NOW + DAY)
        assert first.awarded is True
        assert second.awarded is False
        assert second.reason == "already_awarded"
        assert second.total == 10

    @pytest.mark.asyncio
    async def test_daily_cap_trims_last_award(self, ledger: PointsLedger, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setitem(REWARD_RULES, "capped_action", RewardRule(points=4, daily_cap=10))
        points = []
        for i in range(4):
            result = await ledger.award("telegram_1", "telegram", "capped_action", now=NOW + timedelta(minutes=i))
            points.append(result.points)
        assert points == [4, 4, 2, 0]

        capped = await ledger.award("telegram_1", "telegram", "capped_action", now=NOW + timedelta(minutes=5))
        assert capped.reason == "daily_cap"

        next_day = await ledger.award("telegram_1", "telegram", "capped_action", now=NOW + DAY)
        assert next_day.awarded is True
        assert next_day.total == 14

    @pytest.mark.asyncio
    async def test_cooldown(self, ledger: PointsLedger):
        assert (await ledger.award("telegram_1", "telegram", "event_checkin", now=NOW)).awarded
        again = await ledger.award("telegram_1", "telegram", "event_checkin", now=NOW + timedelta(minutes=10))
        assert again.reason == "cooldown"
        later = await ledger.award("telegram_1", "telegram", "event_checkin", now=NOW + timedelta(minutes=31))
        assert later.awarded is True

    @pytest.mark.asyncio
    async def test_idempotency_key(self, ledger: PointsLedger):
        first = await ledger.award("telegram_1", "telegram", "message_sent", idempotency_key="k1", now=NOW)
        second = await ledger.award("telegram_1", "telegram", "message_sent", idempotency_key="k1", now=NOW)
        assert first.awarded is True
        assert second.awarded is False
        assert second.reason == "duplicate"
        assert second.total == 1

    @pytest.mark.asyncio
    async def test_level_follows_total(self, ledger: PointsLedger):
        await ledger.adjust("telegram_1", "telegram", 149, "import", now=NOW)
        assert (await ledger.get_account("telegram_1")).milestone_level == 2
        await ledger.award("telegram_1", "telegram", "message_sent", now=NOW)
        assert (await ledger.get_account("telegram_1")).milestone_level == 3


class TestStreaks:
    @pytest.mark.asyncio
    async def test_consecutive_days_earn_bonus(self, ledger: PointsLedger):
        await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW)
        await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW + DAY)
        third = await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW + 2 * DAY)

        assert third.streak == 3
        # three opens plus the streak_3 bonus
        assert third.total == 16
        account = await ledger.get_account("telegram_1")
        assert account.first_actions.get("streak_3") is True

    @pytest.mark.asyncio
    async def test_same_day_keeps_streak(self, ledger: PointsLedger):
        await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW)
        result = await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW + timedelta(hours=3))
        assert result.streak == 1

    @pytest.mark.asyncio
    async def test_gap_resets_streak(self, ledger: PointsLedger):
        for i in range(2):
            await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW + i * DAY)
        result = await ledger.award("telegram_1", "telegram", "miniapp_open", now=NOW + 4 * DAY)
        assert result.streak == 1
        account = await ledger.get_account("telegram_1")
        assert account.longest_streak == 2

    @pytest.mark.asyncio
    async def test_other_activity_does_not_extend_streak(self, ledger: PointsLedger):
        await ledger.award("telegram_1", "telegram", "daily_login", now=NOW)
        for i in range(1, 3):
            result = await ledger.award("telegram_1", "telegram", "message_sent", now=NOW + i * DAY)
            assert result.streak == 1
        account = await ledger.get_account("telegram_1")
        assert account.current_streak == 1
        assert account.first_actions.get("streak_3") is None

        # a daily entry after the gap starts over
        result = await ledger.award("telegram_1", "telegram", "daily_login", now=NOW + 2 * DAY)
        assert result.streak == 1


class TestClaimPending:
    def _actions(self) -> list[PendingAction]:
        return [
            PendingAction("message_sent", NOW - timedelta(hours=1)),
            PendingAction("event_saved", NOW - timedelta(hours=2)),
            PendingAction("message_sent", NOW - timedelta(hours=48)),
            PendingAction("message_sent", NOW + timedelta(hours=1)),
            PendingAction("sponsor_verified", NOW - timedelta(hours=1)),
        ]

    @pytest.mark.asyncio
    async def test_claim_filters_and_credits(self, ledger: PointsLedger):
        result = await ledger.claim_pending("telegram_1", "telegram", self._actions(), now=NOW)
        assert result.accepted == 2
        assert result.discarded == 3
        assert result.claimed == 4
        assert result.total == 4

    @pytest.mark.asyncio
    async def test_replay_credits_nothing(self, ledger: PointsLedger):
        await ledger.claim_pending("telegram_1", "telegram", self._actions(), now=NOW)
        replay = await ledger.claim_pending("telegram_1", "telegram", self._actions(), now=NOW)
        assert replay.claimed == 0
        assert replay.accepted == 0
        assert replay.total == 4

    @pytest.mark.asyncio
    async def test_batch_size_is_bounded(self, db_session: AsyncSession):
        ledger = PointsLedger(db_session, max_pending_actions=2)
        actions = [PendingAction("message_sent", NOW - timedelta(minutes=i + 1)) for i in range(3)]
        result = await ledger.claim_pending("telegram_1", "telegram", actions, now=NOW)
        assert result.accepted == 2
        assert result.discarded == 1


class TestAdjust:
    @pytest.mark.asyncio
    async def test_negative_adjustment_clamped_at_zero(self, ledger: PointsLedger):
        await ledger.award("telegram_1", "telegram", "daily_login", now=NOW)
        result = await ledger.adjust("telegram_1", "telegram", -20, "abuse", now=NOW)
        assert result.points == -5
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_zero_adjustment_not_applied(self, ledger: PointsLedger):
        result = await ledger.adjust("telegram_1", "telegram", 0, "noop", now=NOW)
        assert result.awarded is False
        assert result.total == 0


class TestAggregation:
    @pytest.mark.asyncio
    async def test_linked_accounts_sum(self, db_session: AsyncSession, ledger: PointsLedger):
        resolver = IdentityResolver(db_session)
        canonical = await resolver.resolve("telegram_1", ResolveHints(external_auth_id="did:1"))
        await resolver.resolve("farcaster_2", ResolveHints(external_auth_id="did:1"))

        await ledger.adjust("telegram_1", "telegram", 60, "import", now=NOW)
        await ledger.award("farcaster_2", "farcaster", "daily_login", now=NOW)

        summary = await ledger.aggregate(canonical)
        assert summary.points == 65
        assert summary.level == 2
        assert summary.title == "Mover"
        assert summary.streak == 1
        assert {b["platform_user_id"] for b in summary.breakdown} == {"telegram_1", "farcaster_2"}

    @pytest.mark.asyncio
    async def test_unknown_identity_is_empty(self, ledger: PointsLedger):
        summary = await ledger.aggregate("telegram_404")
        assert summary.points == 0
        assert summary.level == 1
        assert summary.breakdown == []

    @pytest.mark.asyncio
    async def test_leaderboard_groups_by_canonical(self, db_session: AsyncSession, ledger: PointsLedger):
        resolver = IdentityResolver(db_session)
        await resolver.resolve("telegram_1", ResolveHints(external_auth_id="did:1", display_name="Ada"))
        await resolver.resolve("farcaster_2", ResolveHints(external_auth_id="did:1"))
        await resolver.resolve("telegram_9", ResolveHints(display_name="Bob"))

        await ledger.adjust("telegram_1", "telegram", 30, "import", now=NOW)
        await ledger.adjust("farcaster_2", "farcaster", 30, "import", now=NOW)
        await ledger.adjust("telegram_9", "telegram", 50, "import", now=NOW)

        board = await ledger.leaderboard()
        assert [(row["rank"], row["canonical_id"], row["points"]) for row in board] == [
            (1, "telegram_1", 60),
            (2, "telegram_9", 50),
        ]
        assert board[0]["display_name"] == "Ada"


class TestEvents:
    @pytest.mark.asyncio
    async def test_award_publishes_event(self, db_session: AsyncSession):
        redis = AsyncMock()
        await PointsLedger(db_session, redis).award("telegram_1", "telegram", "daily_login", now=NOW)
        channel, message = redis.publish.await_args.args
        assert channel == "pubsub:points_awarded"
        assert json.loads(message)["total"] == 5

    @pytest.mark.asyncio
    async def test_ineligible_award_publishes_nothing(self, db_session: AsyncSession):
        redis = AsyncMock()
        ledger = PointsLedger(db_session, redis)
        await ledger.award("telegram_1", "telegram", "daily_login", now=NOW)
        redis.reset_mock()
        await ledger.award("telegram_1", "telegram", "daily_login", now=NOW)
        redis.publish.assert_not_awaited()
