"""Daily streak arithmetic (UTC calendar days)."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone


def utc_day(now: datetime | None = None) -> date:
    """Calendar day in UTC."""
    if now is None:
        now = datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date()


def utc_midnight(now: datetime | None = None) -> datetime:
    """Start of the current UTC day."""
    day = utc_day(now)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def next_streak(current_streak: int, last_award_date: date | None, today: date) -> int:
    """Streak after activity on ``today``.

    Same day leaves it unchanged; the day after the last award extends it;
    any longer gap (or no history) restarts at 1.
    """
    if last_award_date == today:
        return max(current_streak, 1)
    if last_award_date == today - timedelta(days=1):
        return current_streak + 1
    return 1
