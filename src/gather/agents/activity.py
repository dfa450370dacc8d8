"""Read-only view of a person's schedule and check-ins, sold by recommendations."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gather.db.models import Checkin, ScheduleEntry
from gather.identity.store import IdentityStore


async def activity_snapshot(
    db: AsyncSession,
    canonical_id: str,
    now: datetime,
    limit: int = 5,
) -> dict[str, Any]:
    """Upcoming schedule and latest check-in across every linked account."""
    linked = await IdentityStore(db).linked_ids(canonical_id) or [canonical_id]

    schedule = await db.execute(
        select(ScheduleEntry)
        .where(ScheduleEntry.user_id.in_(linked), ScheduleEntry.starts_at >= now)
        .order_by(ScheduleEntry.starts_at.asc())
        .limit(limit)
    )
    checkin = await db.execute(
        select(Checkin)
        .where(Checkin.user_id.in_(linked))
        .order_by(Checkin.created_at.desc())
        .limit(1)
    )
    latest = checkin.scalar_one_or_none()

    return {
        "upcoming": [
            {
                "event_id": entry.event_id,
                "title": entry.event_title,
                "venue": entry.venue_name,
                "starts_at": entry.starts_at.isoformat(),
            }
            for entry in schedule.scalars().all()
        ],
        "latest_checkin": (
            {
                "venue": latest.venue_name,
                "status": latest.status,
                "at": latest.created_at.isoformat(),
            }
            if latest is not None
            else None
        ),
    }
