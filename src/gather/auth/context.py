"""Per-request caller identity."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AuthContext:
    """Who is calling. Passed explicitly into every core operation."""

    platform_user_id: str
    platform: str
    canonical_id: str
