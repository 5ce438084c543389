"""Matching ledger — epoch-based incentive matching with votes, vetoes and rollover."""

__version__ = "0.1.0"
