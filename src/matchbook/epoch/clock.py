"""Epoch clock — pure time-window arithmetic for matching epochs.

An epoch is identified by its start timestamp, which must be an exact
multiple of the epoch period. Each epoch moves through four phases:

    FUNDING   [epoch,        voting_start)   budgets and incentives accepted
    VOTING    [voting_start, epoch_end)      votes accepted
    VETO      [epoch_end,    vetoing_end)    vetoes and non-base conversion
    SETTLED   [vetoing_end,  ...)            distribution and rollover

Budgets and incentives are also accepted during VOTING; FUNDING only
names the stretch before the vote snapshot. The clock holds no state:
every predicate is a function of ``now`` and the configured durations.
"""

from __future__ import annotations

import enum

from matchbook.errors import InvalidEpoch
from matchbook.policy.params import MatchingParams


class EpochPhase(str, enum.Enum):
    """Which window of an epoch is active at a given instant."""
    FUNDING = "funding"
    VOTING = "voting"
    VETO = "veto"
    SETTLED = "settled"


class EpochClock:
    """Derives epoch boundaries and phase predicates from timestamps.

    Usage:
        clock = EpochClock(MatchingParams())
        epoch = clock.current_epoch(now)
        if clock.voting_is_active(epoch, now):
            ...
    """

    def __init__(self, params: MatchingParams) -> None:
        self._period = params.epoch_period
        self._pre_vote = params.pre_vote_period
        self._veto = params.veto_period

    @property
    def epoch_period(self) -> int:
        return self._period

    def is_epoch(self, timestamp: int) -> bool:
        return timestamp >= 0 and timestamp % self._period == 0

    def require_epoch(self, epoch: int) -> int:
        """Return ``epoch`` unchanged, or raise InvalidEpoch."""
        if isinstance(epoch, bool) or not isinstance(epoch, int) or not self.is_epoch(epoch):
            raise InvalidEpoch(
                "Epoch must be a non-negative multiple of the epoch period",
                epoch=epoch,
                epoch_period=self._period,
            )
        return epoch

    def current_epoch(self, now: int) -> int:
        return now - now % self._period

    def last_epoch(self, now: int) -> int:
        return self.current_epoch(now) - self._period

    def voting_start(self, epoch: int) -> int:
        return epoch + self._pre_vote

    def epoch_end(self, epoch: int) -> int:
        return epoch + self._period

    def vetoing_end(self, epoch: int) -> int:
        return self.epoch_end(epoch) + self._veto

    def epoch_is_over(self, epoch: int, now: int) -> bool:
        return now >= self.epoch_end(epoch)

    def funding_is_open(self, epoch: int, now: int) -> bool:
        return now < self.epoch_end(epoch)

    def voting_is_active(self, epoch: int, now: int) -> bool:
        return self.voting_start(epoch) <= now < self.epoch_end(epoch)

    def vetoing_is_active(self, epoch: int, now: int) -> bool:
        return self.epoch_end(epoch) <= now < self.vetoing_end(epoch)

    def vetoing_is_over(self, epoch: int, now: int) -> bool:
        return now >= self.vetoing_end(epoch)

    def phase(self, epoch: int, now: int) -> EpochPhase:
        """Phase of ``epoch`` at ``now``.

        Instants before the epoch starts report FUNDING, since future
        epochs already accept budget deposits.
        """
        if self.vetoing_is_over(epoch, now):
            return EpochPhase.SETTLED
        if self.vetoing_is_active(epoch, now):
            return EpochPhase.VETO
        if self.voting_is_active(epoch, now):
            return EpochPhase.VOTING
        return EpochPhase.FUNDING
