"""Pydantic request/response models for agent endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from gather.agents.transactions import TransactionOut, load_details
from gather.db.models import AgentAccount, AgentSkill, AgentTransaction, EventBoost
from gather.money import from_units


class AgentOut(BaseModel):
    slot: int
    agent_name: str | None = None
    owner_display_name: str | None = None
    status: str
    reserved_for: str | None = None
    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal
    skills: list[str] = []
    claimed_at: datetime | None = None


class AgentListResponse(BaseModel):
    agents: list[AgentOut]
    open_slots: int


class SkillOut(BaseModel):
    slug: str
    name: str
    description: str
    price: Decimal
    category: str
    capabilities: list[str] = []


class SkillListResponse(BaseModel):
    skills: list[SkillOut]


class BoostOut(BaseModel):
    id: int
    agent_slot: int
    event_id: str
    amount: Decimal
    expires_at: datetime


class BoostListResponse(BaseModel):
    boosts: list[BoostOut]


class TransactionListResponse(BaseModel):
    transactions: list[TransactionOut]


class ClaimRequest(BaseModel):
    agent_name: str | None = Field(default=None, max_length=64)


class PurchaseRequest(BaseModel):
    skill: str = Field(min_length=1, max_length=64)
    tx_proof: str | None = Field(default=None, max_length=80)


class BoostRequest(BaseModel):
    event_id: str = Field(min_length=1, max_length=128)


class RecommendRequest(BaseModel):
    target_slot: int
    query: str | None = Field(default=None, max_length=256)


class TipRequest(BaseModel):
    target_slot: int
    amount: Decimal = Field(gt=0)
    message: str | None = Field(default=None, max_length=256)


class PrizeRequest(BaseModel):
    slot: int
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=256)
    awarded_by: str | None = Field(default=None, max_length=128)


class AgentActionResponse(BaseModel):
    agent: AgentOut
    transaction: TransactionOut | None = None
    skill: SkillOut | None = None
    recipient: AgentOut | None = None
    boost: BoostOut | None = None
    product: dict = {}


def agent_out(agent: AgentAccount) -> AgentOut:
    return AgentOut(
        slot=agent.slot,
        agent_name=agent.agent_name,
        owner_display_name=agent.owner_display_name,
        status=agent.status,
        reserved_for=agent.reserved_for,
        balance=from_units(agent.balance_units),
        total_earned=from_units(agent.total_earned_units),
        total_spent=from_units(agent.total_spent_units),
        skills=list(agent.skills or []),
        claimed_at=agent.claimed_at,
    )


def skill_out(skill: AgentSkill) -> SkillOut:
    return SkillOut(
        slug=skill.slug,
        name=skill.name,
        description=skill.description,
        price=from_units(skill.price_units),
        category=skill.category,
        capabilities=list(skill.capabilities or []),
    )


def boost_out(boost: EventBoost) -> BoostOut:
    return BoostOut(
        id=boost.id,
        agent_slot=boost.agent_slot,
        event_id=boost.event_id,
        amount=from_units(boost.amount_units),
        expires_at=boost.expires_at,
    )


def transaction_out(tx: AgentTransaction) -> TransactionOut:
    return TransactionOut(
        id=tx.id,
        tx_type=tx.tx_type,
        from_agent=tx.from_agent,
        to_agent=tx.to_agent,
        amount=from_units(tx.amount_units),
        status=tx.status,
        tx_hash=tx.tx_hash,
        details=load_details(tx.details),
        created_at=tx.created_at,
    )
