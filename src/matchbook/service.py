"""Matching ledger service — unified facade for the incentive-matching core.

This is the primary interface for programmatic access to the ledger.
It orchestrates all subsystems:
- Budget ledger (matcher deposits, rollover re-deposits)
- Incentive ledger (base and non-base incentives, permissioned path)
- Vote weight engine (incremental weighted-product maintenance)
- Voting, veto, and non-base conversion
- Distribution (settlement, payout, target notification)
- Audit trail (append-only event log)

Every mutating operation runs as one atomic, serialised unit:
1. Re-entrancy guard — a collaborator calling back into any mutating
   operation mid-call is rejected.
2. Journal — the store records the prior value of each key the call
   writes, on first write.
3. Ledger state change via the engines.
4. Collaborator side effects (custody transfers, target notification).
5. Audit events appended to the event log in one batch.
Any exception in steps 3-5 replays the journal and propagates
unchanged; no event from a failed call reaches the log.
"""

from __future__ import annotations

import contextlib
import copy
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, Sequence

from matchbook.collaborators import (
    TargetRegistry,
    TokenCustody,
    VotingPowerSource,
)
from matchbook.epoch.clock import EpochClock
from matchbook.errors import (
    InvalidIncentiveToken,
    LedgerError,
    NotPermissionedCaller,
    ReentrantCall,
    TargetHasNoStakingOption,
    TargetNotCertified,
)
from matchbook.matching import (
    BudgetLedger,
    DistributionEngine,
    IncentiveLedger,
    NonBaseConversion,
    RolloverEngine,
    VetoEngine,
    VoteWeightEngine,
    VotingEngine,
)
from matchbook.models.matching import (
    DistributionResult,
    EpochInformation,
    EpochTotals,
    MatchRewardRecord,
    MatcherRecord,
    RolloverBudget,
    TokenMultiplier,
)
from matchbook.persistence.event_log import EventKind, EventLog, EventRecord
from matchbook.persistence.store import LedgerStore
from matchbook.policy.params import MatchingParams

logger = logging.getLogger(__name__)


class MatchingLedger:
    """Epoch-based incentive-matching ledger.

    Usage:
        ledger = MatchingLedger(params, registry, voting_power, custody)

        # Funding
        ledger.add_matching_budget("matcher_1", 1_000, 500, epoch)
        ledger.add_incentives("briber_1", "target_a", 200)

        # Voting window
        ledger.vote("voter_1", ["target_a", "target_b"], [3, 1])

        # Veto window (for the epoch that just ended)
        ledger.veto("matcher_1", "target_b")

        # After the veto window
        result = ledger.distribute("anyone", "target_a", "matcher_1", epoch)
        ledger.rollover_excess_budget("matcher_1", epoch, next_epoch)

    Every mutator accepts an optional ``now`` (unix seconds); when absent
    the injected clock is read.
    """

    def __init__(
        self,
        params: MatchingParams,
        registry: TargetRegistry,
        voting_power: VotingPowerSource,
        custody: TokenCustody,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
        store: Optional[LedgerStore] = None,
    ) -> None:
        params.validate()
        self._params = params
        self._registry = registry
        self._custody = custody
        self._clock_fn = clock or (lambda: int(time.time()))
        self._event_log = event_log if event_log is not None else EventLog()
        self._store = store if store is not None else LedgerStore()

        self.clock = EpochClock(params)
        self._weights = VoteWeightEngine(self._store)
        self._budget = BudgetLedger(self._store, self.clock)
        self._incentives = IncentiveLedger(self._store, self.clock, self._weights)
        self._voting = VotingEngine(self._store, self.clock, self._weights, voting_power)
        self._conversion = NonBaseConversion(self._store, self.clock, params.base_token)
        self._veto = VetoEngine(self._store, self.clock)
        self._distribution = DistributionEngine(self._store, self.clock)
        self._rollover = RolloverEngine(self._store, self.clock, self._budget)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = self._event_log.count
        self._entered = False
        self._pending: list[tuple[EventKind, str, dict[str, Any]]] = []

    @property
    def params(self) -> MatchingParams:
        return self._params

    @property
    def base_token(self) -> str:
        return self._params.base_token

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def add_matching_budget(
        self,
        caller: str,
        match_amount: int,
        vote_amount: int,
        epoch: int,
        now: Optional[int] = None,
    ) -> MatcherRecord:
        """Escrow match and vote budget for ``epoch`` on behalf of ``caller``."""
        with self._operation("add_matching_budget", caller, now) as now:
            record, first = self._budget.add_budget(
                caller, match_amount, vote_amount, epoch, now,
            )
            total = match_amount + vote_amount
            self._custody.transfer_in(self.base_token, caller, total)
            self._emit(EventKind.MATCHING_BUDGET_ADDED, caller, {
                "epoch": epoch,
                "matcher": caller,
                "match_amount": match_amount,
                "vote_amount": vote_amount,
                "new_matcher": first,
                "rollover": False,
            })
            return copy.deepcopy(record)

    def rollover_excess_budget(
        self,
        caller: str,
        matched_epoch: int,
        new_epoch: int,
        now: Optional[int] = None,
    ) -> RolloverBudget:
        """Move ``caller``'s unused budget from a settled epoch into ``new_epoch``."""
        with self._operation("rollover_excess_budget", caller, now) as now:
            amounts, _, first = self._rollover.rollover(
                caller, matched_epoch, new_epoch, now,
            )
            self._emit(EventKind.MATCHING_BUDGET_ADDED, caller, {
                "epoch": new_epoch,
                "matcher": caller,
                "match_amount": amounts.match_rollover,
                "vote_amount": amounts.vote_rollover,
                "new_matcher": first,
                "rollover": True,
            })
            self._emit(EventKind.MATCHING_BUDGET_ROLLED_OVER, caller, {
                "epoch": matched_epoch,
                "new_epoch": new_epoch,
                "matcher": caller,
                "match_rollover": amounts.match_rollover,
                "vote_rollover": amounts.vote_rollover,
            })
            logger.info(
                "Rolled over budget for %s from epoch %d to %d (match=%d, vote=%d)",
                caller, matched_epoch, new_epoch,
                amounts.match_rollover, amounts.vote_rollover,
            )
            return amounts

    # ------------------------------------------------------------------
    # Incentives
    # ------------------------------------------------------------------

    def add_incentives(
        self,
        caller: str,
        target: str,
        amount: int,
        now: Optional[int] = None,
    ) -> int:
        """Add a base-currency incentive for ``target``. Returns the epoch."""
        with self._operation("add_incentives", caller, now) as now:
            return self._add_base_incentive(caller, target, amount, now)

    def add_non_base_token_incentives(
        self,
        caller: str,
        target: str,
        amount: int,
        token: str,
        now: Optional[int] = None,
    ) -> int:
        """Add an incentive in a non-base currency. Returns the epoch."""
        with self._operation("add_non_base_token_incentives", caller, now) as now:
            return self._add_non_base_incentive(caller, target, amount, token, now)

    def permissioned_add_incentives(
        self,
        caller: str,
        target: str,
        amount: int,
        token: str,
        now: Optional[int] = None,
    ) -> int:
        """Privileged incentive entry point, dispatching on currency."""
        with self._operation("permissioned_add_incentives", caller, now) as now:
            designated = self._params.permissioned_caller
            if designated is None or caller != designated:
                raise NotPermissionedCaller(
                    "Caller is not the designated permissioned caller",
                    caller=caller, target=target,
                )
            if token == self.base_token:
                return self._add_base_incentive(caller, target, amount, now)
            return self._add_non_base_incentive(caller, target, amount, token, now)

    def _add_base_incentive(self, caller: str, target: str, amount: int, now: int) -> int:
        self._require_eligible(target)
        epoch = self._incentives.add_incentive(target, amount, now)
        self._custody.transfer_in(self.base_token, caller, amount)
        self._emit(EventKind.INCENTIVE_ADDED, caller, {
            "epoch": epoch,
            "target": target,
            "amount": amount,
        })
        return epoch

    def _add_non_base_incentive(
        self,
        caller: str,
        target: str,
        amount: int,
        token: str,
        now: int,
    ) -> int:
        self._require_eligible(target)
        if token == self.base_token:
            raise InvalidIncentiveToken(
                "Base token incentives use the base path",
                caller=caller, target=target, token=token,
            )
        epoch = self._incentives.add_non_base_incentive(target, amount, token, now)
        self._custody.transfer_in(token, caller, amount)
        self._emit(EventKind.NON_BASE_INCENTIVE_ADDED, caller, {
            "epoch": epoch,
            "target": target,
            "token": token,
            "amount": amount,
        })
        return epoch

    def _require_eligible(self, target: str) -> None:
        if not self._registry.is_certified(target):
            raise TargetNotCertified("Target is not certified by the registry", target=target)
        if not self._registry.has_staking_option(target, self.base_token):
            raise TargetHasNoStakingOption(
                "Target has no voting-escrow staking option",
                target=target, base_token=self.base_token,
            )

    # ------------------------------------------------------------------
    # Non-base conversion
    # ------------------------------------------------------------------

    def set_token_multipliers(
        self,
        caller: str,
        multipliers: Sequence[TokenMultiplier],
        epoch: int,
        now: Optional[int] = None,
    ) -> list[TokenMultiplier]:
        """Publish ``caller``'s non-base multipliers for ``epoch`` (once)."""
        with self._operation("set_token_multipliers", caller, now) as now:
            entries = self._conversion.set_token_multipliers(caller, multipliers, epoch, now)
            self._emit(EventKind.TOKEN_MULTIPLIERS_SET, caller, {
                "epoch": epoch,
                "matcher": caller,
                "multipliers": [
                    {"token": m.token, "multiplier": m.multiplier} for m in entries
                ],
            })
            return list(entries)

    def apply_non_base_token_match(
        self,
        caller: str,
        target: str,
        matcher: str,
        multiplier_index: int,
        epoch: int,
        now: Optional[int] = None,
    ) -> int:
        """Credit ``matcher``'s view of ``target`` with converted non-base incentives.

        Returns the adjusted base-currency amount.
        """
        with self._operation("apply_non_base_token_match", caller, now) as now:
            entry, adjusted = self._conversion.apply_non_base_match(
                target, matcher, multiplier_index, epoch, now,
            )
            self._emit(EventKind.NON_BASE_MATCH_APPLIED, caller, {
                "epoch": epoch,
                "matcher": matcher,
                "target": target,
                "token": entry.token,
                "multiplier_index": multiplier_index,
                "multiplier": entry.multiplier,
                "adjusted_amount": adjusted,
            })
            return adjusted

    # ------------------------------------------------------------------
    # Voting and veto
    # ------------------------------------------------------------------

    def vote(
        self,
        caller: str,
        targets: Sequence[str],
        weights: Sequence[int],
        now: Optional[int] = None,
    ) -> list[tuple[str, int]]:
        """Cast ``caller``'s one vote for the current epoch.

        Returns the per-target vote allocation.
        """
        with self._operation("vote", caller, now) as now:
            epoch, allocations = self._voting.vote(caller, targets, weights, now)
            for target, votes in allocations:
                self._emit(EventKind.VOTE_CAST, caller, {
                    "epoch": epoch,
                    "voter": caller,
                    "target": target,
                    "votes": votes,
                })
            return allocations

    def veto(self, caller: str, target: str, now: Optional[int] = None) -> int:
        """Veto ``target`` for the epoch that just ended. Returns that epoch."""
        with self._operation("veto", caller, now) as now:
            epoch, vote_deduction, incentive_deduction = self._veto.veto(caller, target, now)
            self._emit(EventKind.VETO_CAST, caller, {
                "epoch": epoch,
                "matcher": caller,
                "target": target,
                "vote_product_deduction": vote_deduction,
                "external_incentives_deduction": incentive_deduction,
            })
            return epoch

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def distribute(
        self,
        caller: str,
        target: str,
        matcher: str,
        epoch: int,
        now: Optional[int] = None,
    ) -> DistributionResult:
        """Settle ``target`` against ``matcher``'s budget for ``epoch``.

        A nonzero match is paid from escrow to the target, which is then
        asked to stream it over the configured notify period.
        """
        with self._operation("distribute", caller, now) as now:
            result = self._distribution.settle(target, matcher, epoch, now)
            duration = 0
            if result.total_match > 0:
                self._custody.transfer_out(self.base_token, target, result.total_match)
                duration = self._registry.reward_target(target).notify_reward_amount(
                    result.total_match, self._params.notify_period,
                )
            result = DistributionResult(
                epoch=result.epoch,
                matcher=result.matcher,
                target=result.target,
                incentive_match=result.incentive_match,
                vote_match=result.vote_match,
                vetoed=result.vetoed,
                duration=duration,
            )
            self._emit(EventKind.DISTRIBUTION_EXECUTED, caller, {
                "epoch": epoch,
                "matcher": matcher,
                "target": target,
                "incentive_match": result.incentive_match,
                "vote_match": result.vote_match,
                "total_match": result.total_match,
                "vetoed": result.vetoed,
                "duration": duration,
            })
            logger.info(
                "Distributed %d to %s from %s for epoch %d",
                result.total_match, target, matcher, epoch,
            )
            return result

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def epoch_totals(self, epoch: int) -> EpochTotals:
        self.clock.require_epoch(epoch)
        return copy.deepcopy(self._store.get_totals(epoch))

    def reward_checkpoint(self, epoch: int, target: str) -> EpochInformation:
        self.clock.require_epoch(epoch)
        return copy.deepcopy(self._store.get_reward(epoch, target))

    def matcher_checkpoint(self, epoch: int, matcher: str) -> MatcherRecord:
        self.clock.require_epoch(epoch)
        return copy.deepcopy(self._store.get_matcher(epoch, matcher))

    def match_reward_checkpoint(
        self, epoch: int, matcher: str, target: str,
    ) -> MatchRewardRecord:
        self.clock.require_epoch(epoch)
        return copy.deepcopy(self._store.get_match_reward(epoch, matcher, target))

    def active_targets(self, epoch: int, start: int = 0, end: Optional[int] = None) -> list[str]:
        """Active targets for ``epoch`` in insertion order, sliced [start, end)."""
        self.clock.require_epoch(epoch)
        return _paginate(self._store.active_targets(epoch), start, end)

    def active_target_count(self, epoch: int) -> int:
        self.clock.require_epoch(epoch)
        return len(self._store.active_targets(epoch))

    def matchers(self, epoch: int, start: int = 0, end: Optional[int] = None) -> list[str]:
        """Funded matchers for ``epoch`` in insertion order, sliced [start, end)."""
        self.clock.require_epoch(epoch)
        return _paginate(self._store.matchers(epoch), start, end)

    def matcher_count(self, epoch: int) -> int:
        self.clock.require_epoch(epoch)
        return len(self._store.matchers(epoch))

    def non_base_incentive(self, epoch: int, token: str, target: str) -> int:
        self.clock.require_epoch(epoch)
        return self._store.get_non_base(epoch, token, target)

    def has_voted(self, epoch: int, voter: str) -> bool:
        self.clock.require_epoch(epoch)
        return self._store.has_voted(epoch, voter)

    def rollover_budget(
        self, epoch: int, matcher: str, now: Optional[int] = None,
    ) -> RolloverBudget:
        """Preview what ``rollover_excess_budget`` would move."""
        return self._rollover.rollover_budget(epoch, matcher, self._now(now))

    def weighted_product_drift(self, epoch: int) -> int:
        """Aggregate weighted product minus the per-target sum. Always 0."""
        self.clock.require_epoch(epoch)
        return self._weights.drift(epoch)

    def events(
        self, kind: Optional[EventKind] = None, epoch: Optional[int] = None,
    ) -> list[EventRecord]:
        if epoch is not None:
            return self._event_log.events_for_epoch(epoch, kind)
        return self._event_log.events(kind)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _now(self, now: Optional[int]) -> int:
        return self._clock_fn() if now is None else now

    @contextlib.contextmanager
    def _operation(self, name: str, caller: str, now: Optional[int] = None) -> Iterator[int]:
        """Run one mutating call atomically under the re-entrancy guard.

        Yields the resolved timestamp: ``now`` if given, else the clock.
        """
        if self._entered:
            raise ReentrantCall(
                "Mutating call re-entered the ledger", operation=name, caller=caller,
            )
        resolved = self._now(now)
        self._entered = True
        self._store.begin()
        self._pending = []
        try:
            yield resolved
            self._flush_events(resolved)
        except LedgerError as e:
            self._store.rollback()
            logger.debug("%s rejected for %s: %s", name, caller, e)
            raise
        except Exception:
            self._store.rollback()
            logger.warning("%s failed for %s; state rolled back", name, caller, exc_info=True)
            raise
        else:
            self._store.commit()
            logger.debug("%s accepted for %s", name, caller)
        finally:
            self._pending = []
            self._entered = False

    def _emit(self, kind: EventKind, actor: str, payload: dict[str, Any]) -> None:
        self._pending.append((kind, actor, payload))

    def _flush_events(self, now: int) -> None:
        """Append the call's events as one batch; IDs advance only if it lands."""
        if not self._pending:
            return
        timestamp = datetime.fromtimestamp(now, timezone.utc)
        records = [
            EventRecord.create(
                event_id=f"EVT-{self._event_counter + offset:08d}",
                event_kind=kind,
                actor_id=actor,
                payload=payload,
                timestamp_utc=timestamp,
            )
            for offset, (kind, actor, payload) in enumerate(self._pending, 1)
        ]
        self._event_log.append_batch(records)
        self._event_counter += len(records)


def _paginate(items: list[str], start: int, end: Optional[int]) -> list[str]:
    """Slice [start, end), clipped to the list length."""
    stop = len(items) if end is None else min(end, len(items))
    if start >= stop:
        return []
    return items[max(start, 0):stop]
