"""Domain error taxonomy.

Each error carries the HTTP status the global handler renders it with.
Expected steady-state outcomes (award not eligible, payment required) are
values, not exceptions; these classes cover the remaining cases.
"""

from __future__ import annotations


class GatherError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(GatherError):
    """Unknown identity, agent, skill or sponsorship."""

    status_code = 404


class ValidationFailure(GatherError):
    """Malformed request that passed schema validation (bad enum, below minimum)."""

    status_code = 400


class ConflictError(GatherError):
    """Ineligible foreground operation: already claimed, already owned, reused tx reference."""

    status_code = 409


class InvariantViolation(GatherError):
    """A write that would break a ledger invariant. Rejected before the write."""

    status_code = 422


class DependencyUnavailable(GatherError):
    """External dependency failure on a foreground path. Safe to retry."""

    status_code = 503
