"""Budget ledger — per-epoch, per-matcher escrow of match and vote budgets.

A matcher funds two pools for an epoch:
    match budget → matches each target's incentives (pro-rated if short)
    vote budget  → split across targets by weighted product

Deposits are accepted until the epoch ends, including for future epochs.
The first nonzero deposit in an epoch appends the matcher to the epoch's
ordered matcher list. The list is append-only with no duplicates.

The budget ledger is a pure state machine. The custody transfer that
backs a deposit and the audit event are handled by the service layer.
"""

from __future__ import annotations

from matchbook.epoch.clock import EpochClock
from matchbook.errors import EpochHasEnded, ZeroAmount
from matchbook.fixed_point import checked_add, require_amount
from matchbook.models.matching import MatcherRecord
from matchbook.persistence.store import LedgerStore


class BudgetLedger:
    """Credits matcher budgets and epoch-wide budget totals.

    Usage:
        ledger = BudgetLedger(store, clock)
        record, first = ledger.add_budget("matcher_1", 500, 100, epoch, now)
    """

    def __init__(self, store: LedgerStore, clock: EpochClock) -> None:
        self._store = store
        self._clock = clock

    def add_budget(
        self,
        matcher: str,
        match_amount: int,
        vote_amount: int,
        epoch: int,
        now: int,
    ) -> tuple[MatcherRecord, bool]:
        """Credit ``matcher``'s pools for ``epoch``.

        Returns:
            Tuple of (updated matcher record, whether the matcher was
            newly appended to the epoch's matcher list).

        Raises:
            InvalidEpoch: If ``epoch`` is not period-aligned.
            ZeroAmount: If both amounts are zero.
            EpochHasEnded: If the epoch's funding window has closed.
        """
        self._clock.require_epoch(epoch)
        require_amount(match_amount, "match_amount")
        require_amount(vote_amount, "vote_amount")
        if match_amount == 0 and vote_amount == 0:
            raise ZeroAmount(
                "Match and vote amounts cannot both be zero",
                epoch=epoch, matcher=matcher,
            )
        if not self._clock.funding_is_open(epoch, now):
            raise EpochHasEnded(
                "Cannot add budget after the epoch has ended",
                epoch=epoch, matcher=matcher, now=now,
            )

        record = self._store.ensure_matcher(epoch, matcher)
        totals = self._store.ensure_totals(epoch)
        first = record.match_budget == 0 and record.vote_budget == 0

        record.match_budget = checked_add(record.match_budget, match_amount, "match_budget")
        record.vote_budget = checked_add(record.vote_budget, vote_amount, "vote_budget")
        totals.match_budget = checked_add(totals.match_budget, match_amount, "match_budget")
        totals.vote_budget = checked_add(totals.vote_budget, vote_amount, "vote_budget")

        if first:
            self._store.append_matcher(epoch, matcher)
        return record, first
