"""ORM models for the identity, points and USDC ledger core.

USDC amounts are stored as integer base units (``*_units`` columns); see
``gather.money`` for conversion.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from gather.db.base import Base

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class Identity(Base):
    """One row per platform account, pointing at its canonical identity."""

    __tablename__ = "identities"
    __table_args__ = (
        Index("ix_identities_canonical_id", "canonical_id"),
        Index("ix_identities_external_auth_id", "external_auth_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    platform_user_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    canonical_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_auth_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


class PointsAccount(Base):
    """Per platform account points summary. Created lazily on first award."""

    __tablename__ = "points_accounts"

    platform_user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    milestone_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    last_award_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    first_actions: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PointsLedgerEntry(Base):
    """Append-only award log with optional idempotency key."""

    __tablename__ = "points_ledger"
    __table_args__ = (
        Index("ix_points_ledger_user_action_created", "platform_user_id", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    platform_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Sponsorships
# ---------------------------------------------------------------------------


class Sponsorship(Base):
    """Claimed on-chain payment; pending until the chain confirms or refutes it."""

    __tablename__ = "sponsorships"
    __table_args__ = (
        Index("ix_sponsorships_target", "target_type", "target_id"),
        Index("ix_sponsorships_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sponsor_identity: Mapped[str] = mapped_column(String(128), nullable=False)
    sponsor_platform: Mapped[str] = mapped_column(String(16), nullable=False)
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confirmed_units: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tx_reference: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LocationSponsorTotal(Base):
    """Accumulated verified sponsorship per location."""

    __tablename__ = "location_sponsor_totals"

    location_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    total_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    sponsor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentAccount(Base):
    """Fixed pool slot in the agent marketplace. ``version`` guards conditional updates."""

    __tablename__ = "agent_accounts"

    slot: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    owner_identity: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    owner_display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    agent_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open", server_default="open")
    reserved_for: Mapped[str | None] = mapped_column(String(32), nullable=True)
    balance_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_earned_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_spent_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    skills: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AgentSkill(Base):
    """Purchasable skill catalog entry."""

    __tablename__ = "agent_skills"

    slug: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="utility")
    capabilities: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


class AgentTransaction(Base):
    """Append-only agent ledger.

    ``from_agent``/``to_agent`` carry the money flow; ``agent_slot`` is the
    agent that initiated the transaction (set even when no balance moved,
    e.g. a purchase settled by an external payment proof).
    """

    __tablename__ = "agent_transactions"
    __table_args__ = (
        Index("ix_agent_transactions_agent_slot", "agent_slot"),
        Index("ix_agent_transactions_to_agent", "to_agent"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    agent_slot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_agent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_agent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed", server_default="completed")
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    tx_hash: Mapped[str | None] = mapped_column(String(80), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class EventBoost(Base):
    """Paid event promotion, active until ``expires_at``."""

    __tablename__ = "event_boosts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_slot: Mapped[int] = mapped_column(Integer, nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Activity (written by the schedule/check-in handlers, read by recommendations)
# ---------------------------------------------------------------------------


class ScheduleEntry(Base):
    """A user's saved event."""

    __tablename__ = "schedule_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="schedule_entries_user_event_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_title: Mapped[str] = mapped_column(String(256), nullable=False)
    venue_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Checkin(Base):
    """A user's check-in at a venue."""

    __tablename__ = "checkins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    venue_name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
