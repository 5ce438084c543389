"""Distribution engine — settles one (epoch, matcher, target) payout.

Once the epoch's veto window has closed, anyone may trigger settlement of
a target against a matcher's budget. Each triple settles exactly once.

Settlement math (all integer, rounding down):

    adjusted_incentives = totals.incentives + matcher.non_base_incentives
                          - matcher.incentive_deduction
    target_incentives   = target.incentives + pair.non_base_incentives

    incentive_match = target_incentives                        if match_budget >= adjusted_incentives
                    = match_budget * target_incentives
                      // adjusted_incentives                   otherwise

    adjusted_weight = max(totals.weighted_product, matcher.non_base_weighted_product)
                      - matcher.vote_product_deduction
    vote_match      = vote_budget
                      * max(pair.non_base_weighted_product, target.weighted_product)
                      // adjusted_weight

A vetoed target settles to zero without touching the math.
"""

from __future__ import annotations

from matchbook.epoch.clock import EpochClock
from matchbook.errors import EpochAlreadyDistributed, VetoPeriodHasNotEnded
from matchbook.fixed_point import checked_add, checked_sub, mul_div
from matchbook.models.matching import DistributionResult, MatchState
from matchbook.persistence.store import LedgerStore


class DistributionEngine:
    """Computes and records settlement for a (target, matcher, epoch)."""

    def __init__(self, store: LedgerStore, clock: EpochClock) -> None:
        self._store = store
        self._clock = clock

    def settle(
        self,
        target: str,
        matcher: str,
        epoch: int,
        now: int,
    ) -> DistributionResult:
        """Mark the triple distributed and return the computed match."""
        self._clock.require_epoch(epoch)
        if not self._clock.vetoing_is_over(epoch, now):
            raise VetoPeriodHasNotEnded(
                "Distribution opens after the veto window closes",
                epoch=epoch, matcher=matcher, target=target, now=now,
            )
        pair = self._store.ensure_match_reward(epoch, matcher, target)
        if pair.has_distributed:
            raise EpochAlreadyDistributed(
                "Target already distributed for this matcher",
                epoch=epoch, matcher=matcher, target=target,
            )

        if pair.has_vetoed:
            pair.transition_to(MatchState.SETTLED_AFTER_VETO)
            return DistributionResult(
                epoch=epoch, matcher=matcher, target=target,
                incentive_match=0, vote_match=0, vetoed=True,
            )

        pair.transition_to(MatchState.DISTRIBUTED)
        incentive_match, vote_match = self.compute_match(target, matcher, epoch)
        return DistributionResult(
            epoch=epoch, matcher=matcher, target=target,
            incentive_match=incentive_match, vote_match=vote_match, vetoed=False,
        )

    def compute_match(self, target: str, matcher: str, epoch: int) -> tuple[int, int]:
        """Return (incentive_match, vote_match) without recording anything."""
        totals = self._store.get_totals(epoch)
        record = self._store.get_matcher(epoch, matcher)
        reward = self._store.get_reward(epoch, target)
        pair = self._store.get_match_reward(epoch, matcher, target)

        adjusted_incentives = checked_sub(
            checked_add(totals.info.external_incentives, record.non_base_external_incentives),
            record.external_incentives_deduction,
            "adjusted_incentives",
        )
        target_incentives = checked_add(
            reward.external_incentives, pair.non_base_external_incentives,
        )
        incentive_match = 0
        if adjusted_incentives > 0:
            if record.match_budget >= adjusted_incentives:
                incentive_match = target_incentives
            else:
                incentive_match = mul_div(
                    record.match_budget, target_incentives, adjusted_incentives,
                    "incentive_match",
                )

        adjusted_weight = checked_sub(
            max(totals.info.weighted_product, record.non_base_weighted_product),
            record.vote_product_deduction,
            "adjusted_weight",
        )
        vote_match = 0
        if adjusted_weight > 0:
            vote_match = mul_div(
                record.vote_budget,
                max(pair.non_base_weighted_product, reward.weighted_product),
                adjusted_weight,
                "vote_match",
            )
        return incentive_match, vote_match
