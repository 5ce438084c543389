"""Configuration for the matching ledger."""

from matchbook.policy.params import MatchingParams

__all__ = ["MatchingParams"]
