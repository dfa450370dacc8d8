"""Points ledger: eligibility, awards, streaks and cross-platform aggregation.

Eligibility checks are check-then-act without locking; a rare double award
under a race is tolerated. Ineligibility is returned as ``awarded=False``,
never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gather.db.base import utcnow
from gather.db.models import Identity, PointsAccount, PointsLedgerEntry
from gather.db.upsert import insert_ignore
from gather.identity.store import IdentityStore
from gather.points.rules import MILESTONES, SERVER_ONLY_ACTIONS, STREAK_BONUSES, compute_level, get_rule
from gather.points.streaks import next_streak, utc_day, utc_midnight
from gather.redis_client import publish_event

logger = structlog.get_logger()


@dataclass(frozen=True)
class AwardResult:
    awarded: bool
    points: int
    total: int
    streak: int = 0
    reason: str | None = None


@dataclass(frozen=True)
class PendingAction:
    action: str
    timestamp: datetime


@dataclass(frozen=True)
class ClaimResult:
    claimed: int
    total: int
    accepted: int = 0
    discarded: int = 0


@dataclass
class PointsSummary:
    canonical_id: str
    points: int
    streak: int
    longest_streak: int
    level: int
    title: str
    breakdown: list[dict[str, Any]] = field(default_factory=list)


class PointsLedger:
    """Per platform account points with canonical aggregation."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None = None,
        max_pending_age: timedelta = timedelta(hours=24),
        max_pending_actions: int = 100,
    ) -> None:
        self.db = db
        self.redis = redis
        self.max_pending_age = max_pending_age
        self.max_pending_actions = max_pending_actions

    async def get_account(self, platform_user_id: str) -> PointsAccount | None:
        result = await self.db.execute(
            select(PointsAccount)
            .where(PointsAccount.platform_user_id == platform_user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_account(self, platform_user_id: str, platform: str) -> PointsAccount:
        account = await self.get_account(platform_user_id)
        if account is not None:
            return account
        now = utcnow()
        await insert_ignore(
            self.db,
            PointsAccount,
            {
                "platform_user_id": platform_user_id,
                "platform": platform,
                "total_points": 0,
                "current_streak": 0,
                "longest_streak": 0,
                "milestone_level": 1,
                "first_actions": {},
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["platform_user_id"],
        )
        await self.db.commit()
        account = await self.get_account(platform_user_id)
        if account is None:
            msg = f"points account for {platform_user_id} was not persisted"
            raise RuntimeError(msg)
        return account

    async def award(
        self,
        platform_user_id: str,
        platform: str,
        action: str,
        context: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> AwardResult:
        """Credit ``action`` if eligible.

        1. Check one-time, cooldown and daily-cap eligibility
        2. Insert the ledger entry (idempotency key is unique)
        3. Increment total, advance streak, recompute milestone level
        4. Credit streak bonuses reached by this award
        """
        now = now or utcnow()
        rule = get_rule(action)
        if rule is None:
            existing = await self.get_account(platform_user_id)
            total = existing.total_points if existing is not None else 0
            return AwardResult(awarded=False, points=0, total=total, reason="unknown_action")
        account = await self.get_or_create_account(platform_user_id, platform)

        if idempotency_key is not None:
            dup = await self.db.execute(
                select(PointsLedgerEntry.id).where(PointsLedgerEntry.idempotency_key == idempotency_key)
            )
            if dup.scalar_one_or_none() is not None:
                return self._ineligible(account, "duplicate")

        if rule.once and (account.first_actions or {}).get(action):
            return self._ineligible(account, "already_awarded")

        if rule.cooldown is not None:
            recent = await self.db.execute(
                select(func.count(PointsLedgerEntry.id)).where(
                    PointsLedgerEntry.platform_user_id == platform_user_id,
                    PointsLedgerEntry.action == action,
                    PointsLedgerEntry.created_at > now - rule.cooldown,
                    PointsLedgerEntry.created_at <= now,
                )
            )
            if recent.scalar_one():
                return self._ineligible(account, "cooldown")

        points = rule.points
        if rule.daily_cap is not None:
            today_total = await self._points_today(platform_user_id, action, now)
            if today_total >= rule.daily_cap:
                return self._ineligible(account, "daily_cap")
            points = min(points, rule.daily_cap - today_total)

        self.db.add(PointsLedgerEntry(
            platform_user_id=platform_user_id,
            platform=platform,
            action=action,
            points=points,
            details=context or {},
            idempotency_key=idempotency_key,
            created_at=now,
        ))

        today = utc_day(now)
        values: dict[str, Any] = {
            "total_points": PointsAccount.total_points + points,
            "updated_at": now,
        }
        streak = account.current_streak
        if rule.counts_for_streak:
            streak = next_streak(account.current_streak, account.last_award_date, today)
            values["current_streak"] = streak
            values["longest_streak"] = max(account.longest_streak, streak)
            values["last_award_date"] = today
        if rule.once:
            values["first_actions"] = {**(account.first_actions or {}), action: True}

        try:
            await self.db.execute(
                update(PointsAccount)
                .where(PointsAccount.platform_user_id == platform_user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            account = await self.get_or_create_account(platform_user_id, platform)
            return self._ineligible(account, "duplicate")

        account = await self._refresh_level(platform_user_id)
        await self.db.commit()

        logger.info(
            "points_awarded",
            platform_user_id=platform_user_id,
            action=action,
            points=points,
            total=account.total_points,
        )
        await publish_event(self.redis, "pubsub:points_awarded", {
            "platform_user_id": platform_user_id,
            "action": action,
            "points": points,
            "total": account.total_points,
        })

        total = account.total_points
        bonus_action = STREAK_BONUSES.get(streak) if rule.counts_for_streak else None
        if bonus_action is not None:
            bonus = await self.award(platform_user_id, platform, bonus_action, {"streak": streak}, now=now)
            if bonus.awarded:
                total = bonus.total

        return AwardResult(awarded=True, points=points, total=total, streak=streak)

    async def adjust(
        self,
        platform_user_id: str,
        platform: str,
        delta: int,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> AwardResult:
        """Operator adjustment. May decrease the total; clamped at zero."""
        now = now or utcnow()
        account = await self.get_or_create_account(platform_user_id, platform)
        applied = max(delta, -account.total_points)
        self.db.add(PointsLedgerEntry(
            platform_user_id=platform_user_id,
            platform=platform,
            action="bonus_awarded",
            points=applied,
            details={"reason": reason, "requested": delta},
            created_at=now,
        ))
        await self.db.execute(
            update(PointsAccount)
            .where(PointsAccount.platform_user_id == platform_user_id)
            .values(total_points=PointsAccount.total_points + applied, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        account = await self._refresh_level(platform_user_id)
        await self.db.commit()
        logger.info("points_adjusted", platform_user_id=platform_user_id, delta=applied, reason=reason)
        return AwardResult(awarded=applied != 0, points=applied, total=account.total_points,
                           streak=account.current_streak)

    async def claim_pending(
        self,
        platform_user_id: str,
        platform: str,
        actions: list[PendingAction],
        *,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Replay pre-login actions. Replaying the same list credits nothing the second time."""
        now = now or utcnow()
        oldest = now - self.max_pending_age
        claimed = accepted = discarded = 0
        for item in actions[: self.max_pending_actions]:
            ts = item.timestamp
            if ts < oldest or ts > now or item.action in SERVER_ONLY_ACTIONS:
                discarded += 1
                continue
            key = f"pending:{platform_user_id}:{item.action}:{int(ts.timestamp() * 1000)}"
            result = await self.award(
                platform_user_id,
                platform,
                item.action,
                {"source": "pending", "occurred_at": ts.isoformat()},
                idempotency_key=key,
                now=now,
            )
            if result.awarded:
                claimed += result.points
                accepted += 1
        discarded += max(len(actions) - self.max_pending_actions, 0)

        account = await self.get_or_create_account(platform_user_id, platform)
        if claimed:
            logger.info("pending_points_claimed", platform_user_id=platform_user_id, claimed=claimed)
        return ClaimResult(claimed=claimed, total=account.total_points, accepted=accepted, discarded=discarded)

    async def aggregate(self, canonical_id: str) -> PointsSummary:
        """Sum points, take the max streak/longest/level over every linked account."""
        linked = await IdentityStore(self.db).linked_ids(canonical_id) or [canonical_id]
        result = await self.db.execute(
            select(PointsAccount)
            .where(PointsAccount.platform_user_id.in_(linked))
            .execution_options(populate_existing=True)
        )
        accounts = list(result.scalars().all())

        level = max((a.milestone_level for a in accounts), default=1)
        title = next((m["title"] for m in MILESTONES if m["level"] == level), MILESTONES[0]["title"])
        return PointsSummary(
            canonical_id=canonical_id,
            points=sum(a.total_points for a in accounts),
            streak=max((a.current_streak for a in accounts), default=0),
            longest_streak=max((a.longest_streak for a in accounts), default=0),
            level=level,
            title=title,
            breakdown=[
                {
                    "platform_user_id": a.platform_user_id,
                    "platform": a.platform,
                    "points": a.total_points,
                    "streak": a.current_streak,
                }
                for a in accounts
            ],
        )

    async def history(self, platform_user_ids: list[str], limit: int = 50) -> list[PointsLedgerEntry]:
        result = await self.db.execute(
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.platform_user_id.in_(platform_user_ids))
            .order_by(PointsLedgerEntry.created_at.desc(), PointsLedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def leaderboard(self, limit: int = 20) -> list[dict[str, Any]]:
        """Totals per canonical identity, highest first."""
        canonical = func.coalesce(Identity.canonical_id, PointsAccount.platform_user_id)
        result = await self.db.execute(
            select(
                canonical.label("canonical_id"),
                func.sum(PointsAccount.total_points).label("points"),
                func.max(PointsAccount.current_streak).label("streak"),
                func.max(Identity.display_name).label("display_name"),
            )
            .select_from(PointsAccount)
            .outerjoin(Identity, Identity.platform_user_id == PointsAccount.platform_user_id)
            .group_by(canonical)
            .order_by(func.sum(PointsAccount.total_points).desc())
            .limit(limit)
        )
        return [
            {
                "rank": i + 1,
                "canonical_id": row.canonical_id,
                "display_name": row.display_name,
                "points": int(row.points or 0),
                "streak": int(row.streak or 0),
            }
            for i, row in enumerate(result.all())
        ]

    async def _points_today(self, platform_user_id: str, action: str, now: datetime) -> int:
        start = utc_midnight(now)
        result = await self.db.execute(
            select(func.coalesce(func.sum(PointsLedgerEntry.points), 0)).where(
                PointsLedgerEntry.platform_user_id == platform_user_id,
                PointsLedgerEntry.action == action,
                PointsLedgerEntry.created_at >= start,
                PointsLedgerEntry.created_at < start + timedelta(days=1),
            )
        )
        return int(result.scalar_one())

    async def _refresh_level(self, platform_user_id: str) -> PointsAccount:
        account = await self.get_account(platform_user_id)
        if account is None:
            msg = f"points account for {platform_user_id} disappeared"
            raise RuntimeError(msg)
        level = compute_level(account.total_points)["level"]
        if level != account.milestone_level:
            account.milestone_level = level
            await self.db.flush()
        return account

    @staticmethod
    def _ineligible(account: PointsAccount, reason: str) -> AwardResult:
        return AwardResult(
            awarded=False,
            points=0,
            total=account.total_points,
            streak=account.current_streak,
            reason=reason,
        )
