"""Pydantic request/response models for points endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class AccountBreakdown(BaseModel):
    platform_user_id: str
    platform: str
    points: int
    streak: int


class PointsResponse(BaseModel):
    canonical_id: str
    points: int
    streak: int
    longest_streak: int
    level: int
    title: str
    next_threshold: int | None = None
    points_to_next: int = 0
    accounts: list[AccountBreakdown] = []


class HistoryEntry(BaseModel):
    id: int
    platform_user_id: str
    action: str
    points: int
    details: dict = {}
    created_at: datetime


class HistoryResponse(BaseModel):
    entries: list[HistoryEntry]


class LevelEntry(BaseModel):
    level: int
    title: str
    threshold: int


class LevelsResponse(BaseModel):
    levels: list[LevelEntry]


class LeaderboardEntry(BaseModel):
    rank: int
    canonical_id: str
    display_name: str | None = None
    points: int
    streak: int


class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntry]


class ActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    idempotency_key: str | None = Field(default=None, max_length=128)


class ActionAccepted(BaseModel):
    status: str = "accepted"
    action: str


class AdjustRequest(BaseModel):
    platform_user_id: str = Field(min_length=1)
    delta: int
    reason: str = Field(min_length=1, max_length=256)


class AdjustResponse(BaseModel):
    platform_user_id: str
    applied: int
    total: int
