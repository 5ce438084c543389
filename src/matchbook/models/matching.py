"""Matching ledger records — epoch totals, targets, matchers, triples.

All amounts are non-negative integers (see matchbook.fixed_point).
No floats in the ledger.

Invariants enforced by these models:
- EpochTotals.info.weighted_product equals the sum of weighted_product
  over the epoch's tracked targets (maintained by the weight engine).
- A (epoch, matcher, target) triple's one-shot state only moves forward:
  once vetoed or distributed, it never returns to OPEN.
- A matcher's deduction totals only ever grow.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict

from matchbook.errors import IllegalMatchTransition


@dataclass
class EpochInformation:
    """Vote and incentive accumulators, scoped to one target or one epoch."""
    votes: int = 0
    weighted_product: int = 0
    external_incentives: int = 0
    tracked: bool = False


@dataclass
class EpochTotals:
    """Epoch-wide budget pools plus the aggregate EpochInformation."""
    match_budget: int = 0
    vote_budget: int = 0
    info: EpochInformation = field(default_factory=EpochInformation)


@dataclass(frozen=True)
class TokenMultiplier:
    """A matcher's conversion rate for one non-base currency.

    ``multiplier`` is WAD-scaled. Zero means the currency is not matched.
    """
    token: str
    multiplier: int


@dataclass
class MatcherRecord:
    """One matcher's escrowed budget and settlement adjustments for an epoch."""
    match_budget: int = 0
    vote_budget: int = 0
    vote_product_deduction: int = 0
    external_incentives_deduction: int = 0
    non_base_external_incentives: int = 0
    non_base_weighted_product: int = 0
    token_multipliers: list[TokenMultiplier] = field(default_factory=list)

    @property
    def has_budget(self) -> bool:
        return self.match_budget > 0 or self.vote_budget > 0


class MatchState(str, enum.Enum):
    """One-shot lifecycle of an (epoch, matcher, target) triple.

    State machine:
        OPEN → VETOED → SETTLED_AFTER_VETO
        OPEN → DISTRIBUTED
    """
    OPEN = "open"
    VETOED = "vetoed"
    DISTRIBUTED = "distributed"
    SETTLED_AFTER_VETO = "settled_after_veto"


MATCH_TRANSITIONS: Dict[MatchState, frozenset] = {
    MatchState.OPEN: frozenset({MatchState.VETOED, MatchState.DISTRIBUTED}),
    MatchState.VETOED: frozenset({MatchState.SETTLED_AFTER_VETO}),
    MatchState.DISTRIBUTED: frozenset(),
    MatchState.SETTLED_AFTER_VETO: frozenset(),
}


@dataclass
class MatchRewardRecord:
    """Per (epoch, matcher, target): one-shot state plus non-base credit.

    Mutable — the state advances during veto and distribution. All
    transitions are validated against MATCH_TRANSITIONS.
    """
    state: MatchState = MatchState.OPEN
    non_base_external_incentives: int = 0
    non_base_weighted_product: int = 0
    applied_multipliers: set[int] = field(default_factory=set)

    @property
    def has_vetoed(self) -> bool:
        return self.state in (MatchState.VETOED, MatchState.SETTLED_AFTER_VETO)

    @property
    def has_distributed(self) -> bool:
        return self.state in (MatchState.DISTRIBUTED, MatchState.SETTLED_AFTER_VETO)

    def transition_to(self, new_state: MatchState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = MATCH_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise IllegalMatchTransition(
                f"Invalid match transition: {self.state.value} → {new_state.value}",
                current=self.state.value,
                requested=new_state.value,
            )
        self.state = new_state


@dataclass(frozen=True)
class DistributionResult:
    """Settlement outcome for one (epoch, matcher, target)."""
    epoch: int
    matcher: str
    target: str
    incentive_match: int
    vote_match: int
    vetoed: bool
    duration: int = 0

    @property
    def total_match(self) -> int:
        return self.incentive_match + self.vote_match


@dataclass(frozen=True)
class RolloverBudget:
    """Unused budget a matcher can carry out of a settled epoch."""
    match_rollover: int
    vote_rollover: int

    @property
    def is_empty(self) -> bool:
        return self.match_rollover == 0 and self.vote_rollover == 0
