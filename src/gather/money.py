"""USDC amount conversion.

Amounts travel as ``Decimal`` through the API and the core, and are stored as
integer base units (USDC has 6 decimals) so that conditional SQL arithmetic on
balances is exact.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

USDC_DECIMALS = 6
_SCALE = 10**USDC_DECIMALS
_QUANTUM = Decimal(1).scaleb(-USDC_DECIMALS)


def to_units(amount: Decimal | int | str) -> int:
    """Convert a USDC amount to base units, truncating sub-unit dust."""
    value = Decimal(str(amount)).quantize(_QUANTUM, rounding=ROUND_DOWN)
    return int(value * _SCALE)


def from_units(units: int) -> Decimal:
    """Convert base units back to a USDC ``Decimal`` with 6 places."""
    return (Decimal(units) / _SCALE).quantize(_QUANTUM)
