"""Core data models for the matching ledger."""

from matchbook.models.matching import (
    DistributionResult,
    EpochInformation,
    EpochTotals,
    MatchRewardRecord,
    MatchState,
    MatcherRecord,
    RolloverBudget,
    TokenMultiplier,
)

__all__ = [
    "DistributionResult",
    "EpochInformation",
    "EpochTotals",
    "MatchRewardRecord",
    "MatchState",
    "MatcherRecord",
    "RolloverBudget",
    "TokenMultiplier",
]
