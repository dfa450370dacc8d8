"""Reward rules and milestone levels.

``daily_cap`` is counted in points per calendar day (UTC) per action; an
award that would cross the cap is trimmed to the remainder. ``once`` actions
credit at most one time ever per account. Only daily-entry actions
(``counts_for_streak``) advance the consecutive-day streak.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class RewardRule:
    points: int
    daily_cap: int | None = None
    once: bool = False
    cooldown: timedelta | None = None
    counts_for_streak: bool = False


REWARD_RULES: dict[str, RewardRule] = {
    # Core activity
    "message_sent": RewardRule(points=1),
    "miniapp_open": RewardRule(points=2, daily_cap=10, counts_for_streak=True),
    "daily_login": RewardRule(points=5, daily_cap=5, counts_for_streak=True),
    "events_viewed": RewardRule(points=2, daily_cap=20),
    "event_saved": RewardRule(points=3, daily_cap=30),
    "search": RewardRule(points=2, daily_cap=20),
    "event_rsvp": RewardRule(points=5, daily_cap=25),
    "event_link_shared": RewardRule(points=8, daily_cap=40),
    "event_checkin": RewardRule(points=5, daily_cap=25, cooldown=timedelta(minutes=30)),
    "qr_checkin": RewardRule(points=10, daily_cap=30, cooldown=timedelta(minutes=30)),
    # One-time milestones
    "verification_complete": RewardRule(points=25, once=True),
    "onboarding_complete": RewardRule(points=10, once=True),
    "crew_created": RewardRule(points=20, once=True),
    "group_joined": RewardRule(points=15, once=True),
    # Social
    "social_linked": RewardRule(points=10, daily_cap=50),
    "referral_click": RewardRule(points=3, daily_cap=30),
    "referral_signup": RewardRule(points=10, daily_cap=50),
    "crew_joined": RewardRule(points=10, daily_cap=30),
    "crew_invite_sent": RewardRule(points=3, daily_cap=15),
    "friend_meetup": RewardRule(points=10, daily_cap=30),
    "crew_meetup": RewardRule(points=15, daily_cap=30),
    "group_message": RewardRule(points=1, daily_cap=30),
    "group_reply": RewardRule(points=2, daily_cap=20),
    # Sponsorships
    "sponsor_created": RewardRule(points=5, daily_cap=25),
    "sponsor_verified": RewardRule(points=15, daily_cap=75),
    # Streak bonuses
    "streak_3": RewardRule(points=10, once=True),
    "streak_7": RewardRule(points=25, once=True),
    "streak_30": RewardRule(points=100, once=True),
}

STREAK_BONUSES: dict[int, str] = {3: "streak_3", 7: "streak_7", 30: "streak_30"}

# Credited by the server itself; clients cannot report these.
SERVER_ONLY_ACTIONS: frozenset[str] = frozenset(
    {"verification_complete", "sponsor_created", "sponsor_verified", *STREAK_BONUSES.values()}
)

MILESTONES: list[dict] = [
    {"level": 1, "title": "Explorer", "threshold": 0},
    {"level": 2, "title": "Mover", "threshold": 50},
    {"level": 3, "title": "Groover", "threshold": 150},
    {"level": 4, "title": "Dancer", "threshold": 500},
    {"level": 5, "title": "Star", "threshold": 1000},
    {"level": 6, "title": "Legend", "threshold": 2500},
]


def get_rule(action: str) -> RewardRule | None:
    return REWARD_RULES.get(action)


def compute_level(total_points: int) -> dict:
    """Milestone info for a points total.

    Returns level, title, the next threshold (None at max level) and the
    points still needed to reach it.
    """
    current = MILESTONES[0]
    for milestone in MILESTONES:
        if total_points >= milestone["threshold"]:
            current = milestone

    idx = MILESTONES.index(current)
    nxt = MILESTONES[idx + 1] if idx + 1 < len(MILESTONES) else None
    return {
        "level": current["level"],
        "title": current["title"],
        "threshold": current["threshold"],
        "next_threshold": nxt["threshold"] if nxt else None,
        "points_to_next": (nxt["threshold"] - total_points) if nxt else 0,
    }
