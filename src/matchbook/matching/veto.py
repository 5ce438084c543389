"""Veto subsystem — a matcher excludes one target from its settlement base.

Vetoes apply to the epoch that just ended and are accepted only inside its
veto window. A veto removes the target's contribution from the matcher's
denominators:

    vote_product_deduction       += max(target.weighted_product, pair.non_base_weighted_product)
    external_incentives_deduction += target.external_incentives + pair.non_base_incentives

Once a non-base conversion has produced a pair weight, that weight
supersedes the base-only value, which is what the ``max`` selects.
Deductions only ever grow.
"""

from __future__ import annotations

from matchbook.epoch.clock import EpochClock
from matchbook.errors import AlreadyVetoed, MatcherHasNoBudget, VetoPeriodNotActive
from matchbook.fixed_point import checked_add
from matchbook.models.matching import MatchState
from matchbook.persistence.store import LedgerStore


class VetoEngine:
    """Records one-time vetoes and the resulting matcher deductions."""

    def __init__(self, store: LedgerStore, clock: EpochClock) -> None:
        self._store = store
        self._clock = clock

    def veto(self, matcher: str, target: str, now: int) -> tuple[int, int, int]:
        """Veto ``target`` for the epoch that just ended.

        Returns:
            Tuple of (epoch, vote product deduction, incentive deduction).
        """
        epoch = self._clock.last_epoch(now)
        if not self._clock.vetoing_is_active(epoch, now):
            raise VetoPeriodNotActive(
                "Vetoes are only accepted during the veto window",
                epoch=epoch, matcher=matcher, target=target, now=now,
            )
        if self._store.get_match_reward(epoch, matcher, target).has_vetoed:
            raise AlreadyVetoed(
                "Matcher has already vetoed this target",
                epoch=epoch, matcher=matcher, target=target,
            )
        if not self._store.get_matcher(epoch, matcher).has_budget:
            raise MatcherHasNoBudget(
                "Only a funded matcher can veto", epoch=epoch, matcher=matcher,
            )

        record = self._store.ensure_matcher(epoch, matcher)
        pair = self._store.ensure_match_reward(epoch, matcher, target)
        reward = self._store.get_reward(epoch, target)

        vote_deduction = max(reward.weighted_product, pair.non_base_weighted_product)
        incentive_deduction = checked_add(
            reward.external_incentives, pair.non_base_external_incentives,
        )
        pair.transition_to(MatchState.VETOED)
        record.vote_product_deduction = checked_add(
            record.vote_product_deduction, vote_deduction, "vote_product_deduction",
        )
        record.external_incentives_deduction = checked_add(
            record.external_incentives_deduction,
            incentive_deduction,
            "external_incentives_deduction",
        )
        return epoch, vote_deduction, incentive_deduction
