"""Gather: cross-platform identity, points and USDC ledger service."""

__version__ = "0.1.0"
