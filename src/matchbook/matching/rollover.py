"""Rollover engine — carries unused budget out of a settled epoch.

    match_rollover = max(0, match_budget - chargeable_incentives)
    vote_rollover  = vote_budget   if the matcher's effective weighted product is 0
                   = 0             otherwise

Vote budget left over in an epoch where any weight existed is forfeited.
Rolling over deletes the matcher's record for the settled epoch, then
deposits the amounts into the new epoch through the budget ledger.
"""

from __future__ import annotations

from matchbook.epoch.clock import EpochClock
from matchbook.errors import VetoPeriodHasNotEnded
from matchbook.fixed_point import checked_add, checked_sub
from matchbook.matching.budget import BudgetLedger
from matchbook.models.matching import MatcherRecord, RolloverBudget
from matchbook.persistence.store import LedgerStore


class RolloverEngine:
    """Previews and executes budget rollover for a matcher."""

    def __init__(
        self,
        store: LedgerStore,
        clock: EpochClock,
        budget: BudgetLedger,
    ) -> None:
        self._store = store
        self._clock = clock
        self._budget = budget

    def rollover_budget(self, epoch: int, matcher: str, now: int) -> RolloverBudget:
        self._clock.require_epoch(epoch)
        if not self._clock.vetoing_is_over(epoch, now):
            raise VetoPeriodHasNotEnded(
                "Rollover opens after the veto window closes",
                epoch=epoch, matcher=matcher, now=now,
            )
        totals = self._store.get_totals(epoch)
        record = self._store.get_matcher(epoch, matcher)

        chargeable = checked_sub(
            checked_add(record.non_base_external_incentives, totals.info.external_incentives),
            record.external_incentives_deduction,
            "chargeable_incentives",
        )
        match_rollover = 0
        if record.match_budget > chargeable:
            match_rollover = record.match_budget - chargeable

        effective_weight = checked_sub(
            max(record.non_base_weighted_product, totals.info.weighted_product),
            record.vote_product_deduction,
            "effective_weight",
        )
        vote_rollover = record.vote_budget if effective_weight == 0 else 0
        return RolloverBudget(match_rollover=match_rollover, vote_rollover=vote_rollover)

    def rollover(
        self,
        matcher: str,
        matched_epoch: int,
        new_epoch: int,
        now: int,
    ) -> tuple[RolloverBudget, MatcherRecord, bool]:
        """Move ``matcher``'s unused budget from ``matched_epoch`` to ``new_epoch``.

        Returns:
            Tuple of (rolled amounts, matcher record in the new epoch,
            whether the matcher was newly appended there).
        """
        amounts = self.rollover_budget(matched_epoch, matcher, now)
        self._store.delete_matcher(matched_epoch, matcher)
        record, first = self._budget.add_budget(
            matcher, amounts.match_rollover, amounts.vote_rollover, new_epoch, now,
        )
        return amounts, record, first
