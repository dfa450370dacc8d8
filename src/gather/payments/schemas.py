"""Pydantic request/response models for sponsorship endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from gather.payments.verifier import SponsorshipStatus, TargetType


class WalletResponse(BaseModel):
    address: str
    chain: str
    currency: str = "USDC"
    token_contract: str
    min_amount: Decimal


class SponsorRequest(BaseModel):
    target_type: TargetType
    target_id: str = Field(min_length=1, max_length=128)
    amount: Decimal = Field(gt=0, max_digits=18, decimal_places=6)
    tx_reference: str = Field(min_length=1, max_length=80)


class SponsorshipResponse(BaseModel):
    id: int
    target_type: str
    target_id: str
    amount: Decimal
    confirmed_amount: Decimal | None = None
    tx_reference: str
    status: SponsorshipStatus
    rejection_reason: str | None = None
    created_at: datetime
    verified_at: datetime | None = None
    expires_at: datetime | None = None


class VerifyResponse(BaseModel):
    outcome: str
    error: str | None = None
    sponsorship: SponsorshipResponse


class RankingEntry(BaseModel):
    target_type: str
    target_id: str
    total_usdc: Decimal
    sponsor_count: int


class RankingsResponse(BaseModel):
    rankings: list[RankingEntry]


class FeaturedResponse(BaseModel):
    featured: SponsorshipResponse | None = None


class RankedLocation(BaseModel):
    location_id: str
    total_usdc: Decimal
    sponsor_count: int


class RankedLocationsResponse(BaseModel):
    locations: list[RankedLocation]
