"""Agent transaction types and their typed metadata.

Each transaction type carries exactly one metadata shape; the union is
discriminated by ``type`` so the taxonomy is closed.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


class TxType(StrEnum):
    SEED = "seed"
    SKILL_PURCHASE = "skill_purchase"
    EVENT_BOOST = "event_boost"
    RECOMMENDATION = "recommendation"
    TIP = "tip"
    PRIZE = "prize"


class SeedDetails(BaseModel):
    type: Literal["seed"] = "seed"
    starter_skill: str


class SkillPurchaseDetails(BaseModel):
    type: Literal["skill_purchase"] = "skill_purchase"
    skill: str
    paid_with: Literal["balance", "tx_proof"] = "balance"


class EventBoostDetails(BaseModel):
    type: Literal["event_boost"] = "event_boost"
    event_id: str
    boost_id: int
    expires_at: datetime


class RecommendationDetails(BaseModel):
    type: Literal["recommendation"] = "recommendation"
    target_agent: int
    query: str | None = None


class TipDetails(BaseModel):
    type: Literal["tip"] = "tip"
    message: str | None = None


class PrizeDetails(BaseModel):
    type: Literal["prize"] = "prize"
    reason: str
    awarded_by: str | None = None


TransactionDetails = Annotated[
    SeedDetails
    | SkillPurchaseDetails
    | EventBoostDetails
    | RecommendationDetails
    | TipDetails
    | PrizeDetails,
    Field(discriminator="type"),
]

_details_adapter: TypeAdapter[TransactionDetails] = TypeAdapter(TransactionDetails)


def dump_details(details: BaseModel) -> dict:
    return details.model_dump(mode="json")


def load_details(raw: dict) -> TransactionDetails:
    return _details_adapter.validate_python(raw)


class TransactionOut(BaseModel):
    id: int
    tx_type: TxType
    from_agent: int | None
    to_agent: int | None
    amount: Decimal
    status: str
    tx_hash: str | None = None
    details: TransactionDetails
    created_at: datetime
