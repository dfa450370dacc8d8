"""Agent slot pool and skill catalog seed data."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gather.db.models import AgentAccount, AgentSkill
from gather.db.upsert import dialect_insert
from gather.money import to_units

logger = logging.getLogger(__name__)

SKILL_SEED_DATA: list[dict] = [
    {
        "slug": "event-discovery",
        "name": "Event Discovery",
        "description": "Real-time event search + AI recommendations",
        "price": "0.05",
        "category": "discovery",
        "capabilities": ["search_events", "recommend_events", "filter_by_vibe"],
    },
    {
        "slug": "social-connector",
        "name": "Social Connector",
        "description": "Find mutual connections and suggest intros",
        "price": "0.10",
        "category": "social",
        "capabilities": ["find_mutuals", "suggest_intros", "social_graph"],
    },
    {
        "slug": "crew-finder",
        "name": "Crew Finder",
        "description": "Match to best crews based on interests",
        "price": "0.05",
        "category": "social",
        "capabilities": ["match_crews", "crew_compatibility", "join_suggestions"],
    },
    {
        "slug": "event-boost",
        "name": "Event Boost",
        "description": "Pin an event at top of everyone's feed for 24h",
        "price": "0.50",
        "category": "promotion",
        "capabilities": ["boost_event", "featured_placement", "notification_blast"],
    },
    {
        "slug": "vibe-check",
        "name": "Vibe Check",
        "description": "Sentiment analysis of event buzz and attendance",
        "price": "0.10",
        "category": "analytics",
        "capabilities": ["sentiment_analysis", "attendance_prediction", "vibe_score"],
    },
    {
        "slug": "tip-sender",
        "name": "Tip Sender",
        "description": "Send micro-tips to event organizers and creators",
        "price": "0.02",
        "category": "payments",
        "capabilities": ["send_tip", "tip_chain", "gratitude_flow"],
    },
]


async def seed_skills(db: AsyncSession, skills: list[dict] | None = None) -> int:
    """Upsert the skill catalog. Returns number of skills seeded."""
    seeded = 0
    for skill in skills if skills is not None else SKILL_SEED_DATA:
        values = {k: v for k, v in skill.items() if k != "price"}
        values["price_units"] = to_units(skill["price"])
        stmt = dialect_insert(db, AgentSkill).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "price_units": stmt.excluded.price_units,
                "category": stmt.excluded.category,
                "capabilities": stmt.excluded.capabilities,
            },
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d agent skills", seeded)
    return seeded


async def seed_slots(db: AsyncSession, slot_count: int, reserved: dict[int, str]) -> int:
    """Create the fixed slot pool. Existing slots keep their state."""
    created = 0
    for slot in range(1, slot_count + 1):
        reserved_for = reserved.get(slot)
        stmt = dialect_insert(db, AgentAccount).values(
            slot=slot,
            status="reserved" if reserved_for else "open",
            reserved_for=reserved_for,
            balance_units=0,
            total_earned_units=0,
            total_spent_units=0,
            skills=[],
            version=0,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["slot"])
        result = await db.execute(stmt)
        created += result.rowcount or 0

    await db.commit()
    logger.info("Seeded %d agent slots (%d total)", created, slot_count)
    return created
