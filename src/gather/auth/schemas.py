"""Pydantic request/response models for auth endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    platform: str
    native_id: str = Field(min_length=1, max_length=128)
    display_name: str | None = Field(default=None, max_length=128)
    external_auth_id: str | None = Field(default=None, max_length=256)
    merge: bool = False


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    platform_user_id: str
    canonical_id: str


class LinkRequest(BaseModel):
    external_auth_id: str | None = Field(default=None, max_length=256)


class LinkResponse(BaseModel):
    canonical_id: str
    platform_user_ids: list[str]


class PendingActionIn(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    timestamp: datetime


class ClaimPointsRequest(BaseModel):
    actions: list[PendingActionIn]


class ClaimPointsResponse(BaseModel):
    claimed: int
    total: int
    accepted: int
    discarded: int


class MeResponse(BaseModel):
    platform_user_id: str
    platform: str
    canonical_id: str
    display_name: str | None = None
    linked_ids: list[str]
    accounts: dict[str, bool]
