"""Voting subsystem — one weighted vote allocation per voter per epoch.

A voter's power is their share of the governance token at the epoch's
vote snapshot (``voting_start``), WAD-scaled:

    power = past_votes(voter, snapshot) * WAD // past_total_supply(snapshot)

The power is split across the listed targets by relative weight. Targets
must be strictly ascending, which rules out duplicates without an
auxiliary set.

Every check runs before any mutation, so a rejected vote leaves no trace
(the one-shot flag included). The service layer additionally wraps the
call in a rollback transaction.
"""

from __future__ import annotations

from typing import Sequence

from matchbook.collaborators import VotingPowerSource
from matchbook.epoch.clock import EpochClock
from matchbook.errors import (
    InvalidTargetOrder,
    InvalidVote,
    LengthMismatch,
    SenderHasAlreadyVoted,
    SenderHasNoVotingPower,
    VotePeriodNotActive,
)
from matchbook.fixed_point import WAD, checked_add, mul_div, require_amount
from matchbook.matching.weights import VoteWeightEngine
from matchbook.persistence.store import LedgerStore


class VotingEngine:
    """Records weighted votes and feeds them to the weight engine.

    Usage:
        engine = VotingEngine(store, clock, weights, power_source)
        allocations = engine.vote("voter_1", ["a", "b"], [1, 1], now)
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: EpochClock,
        weights: VoteWeightEngine,
        power_source: VotingPowerSource,
    ) -> None:
        self._store = store
        self._clock = clock
        self._weights = weights
        self._power_source = power_source

    def voting_power(self, voter: str, epoch: int) -> int:
        """WAD-scaled share of total supply at the epoch's vote snapshot."""
        snapshot = self._clock.voting_start(epoch)
        votes = require_amount(self._power_source.past_votes(voter, snapshot), "past_votes")
        supply = require_amount(self._power_source.past_total_supply(snapshot), "past_total_supply")
        if supply == 0:
            return 0
        return mul_div(votes, WAD, supply, "voting_power")

    def vote(
        self,
        voter: str,
        targets: Sequence[str],
        weights: Sequence[int],
        now: int,
    ) -> tuple[int, list[tuple[str, int]]]:
        """Cast ``voter``'s single vote for the current epoch.

        Returns:
            Tuple of (epoch, [(target, votes), ...]) in target order.

        Raises:
            VotePeriodNotActive: Outside [voting_start, epoch_end).
            SenderHasAlreadyVoted: The voter already voted this epoch.
            LengthMismatch: ``targets`` and ``weights`` differ in length.
            InvalidTargetOrder: Targets not strictly ascending.
            SenderHasNoVotingPower: Snapshot power is zero.
            InvalidVote: No targets, zero total weight, or a target's
                share rounds down to zero.
        """
        epoch = self._clock.current_epoch(now)
        if not self._clock.voting_is_active(epoch, now):
            raise VotePeriodNotActive(
                "Votes are only accepted during the voting window",
                epoch=epoch, voter=voter, now=now,
            )
        if self._store.has_voted(epoch, voter):
            raise SenderHasAlreadyVoted(
                "Voter has already voted this epoch", epoch=epoch, voter=voter,
            )

        allocations = self._allocate(voter, epoch, list(targets), list(weights))

        self._store.mark_voted(epoch, voter)
        totals = self._store.ensure_totals(epoch)
        for target, votes in allocations:
            reward = self._store.ensure_reward(epoch, target)
            reward.votes = checked_add(reward.votes, votes, "votes")
            totals.info.votes = checked_add(totals.info.votes, votes, "votes")
            self._weights.recompute(epoch, target)
        return epoch, allocations

    def _allocate(
        self,
        voter: str,
        epoch: int,
        targets: list[str],
        weights: list[int],
    ) -> list[tuple[str, int]]:
        if len(targets) != len(weights):
            raise LengthMismatch(
                "Targets and weights must have the same length",
                epoch=epoch, voter=voter,
                targets=len(targets), weights=len(weights),
            )
        if not targets:
            raise InvalidVote("Vote must address at least one target", epoch=epoch, voter=voter)

        power = self.voting_power(voter, epoch)
        if power == 0:
            raise SenderHasNoVotingPower(
                "Voter has no voting power at the snapshot",
                epoch=epoch, voter=voter, snapshot=self._clock.voting_start(epoch),
            )

        for previous, current in zip(targets, targets[1:]):
            if not previous < current:
                raise InvalidTargetOrder(
                    "Targets must be strictly ascending",
                    epoch=epoch, voter=voter, previous=previous, target=current,
                )
        for weight in weights:
            require_amount(weight, "weight")

        total_weight = sum(weights)
        if total_weight == 0:
            raise InvalidVote("Vote weights sum to zero", epoch=epoch, voter=voter)

        allocations: list[tuple[str, int]] = []
        for target, weight in zip(targets, weights):
            votes = mul_div(power, weight, total_weight, "votes")
            if votes == 0:
                raise InvalidVote(
                    "Vote for target rounds to zero",
                    epoch=epoch, voter=voter, target=target, weight=weight,
                )
            allocations.append((target, votes))
        return allocations
