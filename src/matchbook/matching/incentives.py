"""Incentive ledger — external incentives earmarked for reward targets.

Incentives always post against the current epoch.

Base-currency incentives accrue on the target's record and the epoch
aggregate, then refresh the target's weighted product. Non-base
incentives are held raw per (currency, target). They reach settlement
only through a matcher's multiplier (see matching.conversion).

Registry eligibility (certification, staking option) is checked by the
service layer before either path runs.
"""

from __future__ import annotations

from matchbook.epoch.clock import EpochClock
from matchbook.errors import ZeroAmount
from matchbook.fixed_point import checked_add, require_amount
from matchbook.matching.weights import VoteWeightEngine
from matchbook.persistence.store import LedgerStore


class IncentiveLedger:
    """Accumulates base and non-base incentives per epoch and target."""

    def __init__(
        self,
        store: LedgerStore,
        clock: EpochClock,
        weights: VoteWeightEngine,
    ) -> None:
        self._store = store
        self._clock = clock
        self._weights = weights

    def add_incentive(self, target: str, amount: int, now: int) -> int:
        """Add a base-currency incentive for ``target``. Returns the epoch."""
        require_amount(amount)
        epoch = self._clock.current_epoch(now)
        if amount == 0:
            raise ZeroAmount("Incentive amount must be nonzero", epoch=epoch, target=target)

        self._store.track_target(epoch, target)
        reward = self._store.ensure_reward(epoch, target)
        totals = self._store.ensure_totals(epoch)
        reward.external_incentives = checked_add(
            reward.external_incentives, amount, "external_incentives",
        )
        totals.info.external_incentives = checked_add(
            totals.info.external_incentives, amount, "external_incentives",
        )
        self._weights.recompute(epoch, target)
        return epoch

    def add_non_base_incentive(
        self,
        target: str,
        amount: int,
        token: str,
        now: int,
    ) -> int:
        """Add a raw non-base incentive for ``target``. Returns the epoch."""
        require_amount(amount)
        epoch = self._clock.current_epoch(now)
        if amount == 0:
            raise ZeroAmount(
                "Incentive amount must be nonzero",
                epoch=epoch, target=target, token=token,
            )

        self._store.track_target(epoch, target)
        current = self._store.get_non_base(epoch, token, target)
        self._store.set_non_base(
            epoch, token, target, checked_add(current, amount, "non_base_incentive"),
        )
        return epoch
