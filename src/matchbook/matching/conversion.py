"""Non-base conversion — matcher-specific credit for non-base incentives.

Incentives paid in a currency other than the base token are held raw per
(currency, target). A matcher opts into matching them by publishing, once
per epoch, a list of (currency, multiplier) pairs. After the epoch ends,
anyone may apply one of those multipliers to a target:

    adjusted = raw_amount * multiplier // WAD

The adjusted amount is credited only in that matcher's view of the epoch:
its non-base incentive total and the (matcher, target) pair. The pair's
weighted product becomes

    (target.external_incentives + pair.non_base_incentives) * target.votes

and replaces the target's previous contribution inside the matcher's
aggregate, the same subtract/add discipline as the weight engine.

Each multiplier index applies at most once per (epoch, matcher, target).
"""

from __future__ import annotations

from typing import Sequence

from matchbook.epoch.clock import EpochClock
from matchbook.errors import (
    AlreadyVetoed,
    EpochAlreadyDistributed,
    EpochHasEnded,
    EpochHasNotEnded,
    InvalidIncentiveToken,
    InvalidMultiplierIndex,
    MatcherHasNoBudget,
    NonBaseMatchAlreadyApplied,
    TokenMultipliersAlreadySet,
    VetoPeriodNotActive,
    ZeroAmount,
)
from matchbook.fixed_point import (
    checked_add,
    checked_mul,
    checked_sub,
    mul_wad_down,
    require_amount,
)
from matchbook.models.matching import TokenMultiplier
from matchbook.persistence.store import LedgerStore


class NonBaseConversion:
    """Stores matcher multipliers and applies them to non-base incentives."""

    def __init__(self, store: LedgerStore, clock: EpochClock, base_token: str) -> None:
        self._store = store
        self._clock = clock
        self._base_token = base_token

    def set_token_multipliers(
        self,
        matcher: str,
        multipliers: Sequence[TokenMultiplier],
        epoch: int,
        now: int,
    ) -> list[TokenMultiplier]:
        """Publish ``matcher``'s multiplier list for ``epoch``, once."""
        self._clock.require_epoch(epoch)
        if not self._clock.funding_is_open(epoch, now):
            raise EpochHasEnded(
                "Cannot set multipliers after the epoch has ended",
                epoch=epoch, matcher=matcher, now=now,
            )
        existing = self._store.get_matcher(epoch, matcher)
        if existing.token_multipliers:
            raise TokenMultipliersAlreadySet(
                "Token multipliers already set for this epoch",
                epoch=epoch, matcher=matcher,
            )
        entries = list(multipliers)
        for entry in entries:
            require_amount(entry.multiplier, "multiplier")
            if entry.token == self._base_token:
                raise InvalidIncentiveToken(
                    "Base token cannot carry a multiplier",
                    epoch=epoch, matcher=matcher, token=entry.token,
                )

        if entries:
            record = self._store.ensure_matcher(epoch, matcher)
            record.token_multipliers = entries
        return entries

    def apply_non_base_match(
        self,
        target: str,
        matcher: str,
        index: int,
        epoch: int,
        now: int,
    ) -> tuple[TokenMultiplier, int]:
        """Convert the raw non-base incentive selected by ``index``.

        Returns:
            Tuple of (multiplier entry used, adjusted base-currency amount).
        """
        self._clock.require_epoch(epoch)
        if not self._clock.epoch_is_over(epoch, now):
            raise EpochHasNotEnded(
                "Non-base matches apply only after the epoch ends",
                epoch=epoch, matcher=matcher, target=target, now=now,
            )
        if self._clock.vetoing_is_over(epoch, now):
            raise VetoPeriodNotActive(
                "Non-base matches must be applied before the veto window closes",
                epoch=epoch, matcher=matcher, target=target, now=now,
            )

        pair_view = self._store.get_match_reward(epoch, matcher, target)
        if pair_view.has_vetoed:
            raise AlreadyVetoed(
                "Matcher has vetoed this target",
                epoch=epoch, matcher=matcher, target=target,
            )
        if pair_view.has_distributed:
            raise EpochAlreadyDistributed(
                "Target already distributed for this matcher",
                epoch=epoch, matcher=matcher, target=target,
            )

        matcher_view = self._store.get_matcher(epoch, matcher)
        if not 0 <= index < len(matcher_view.token_multipliers):
            raise InvalidMultiplierIndex(
                "No multiplier at this index",
                epoch=epoch, matcher=matcher, index=index,
                available=len(matcher_view.token_multipliers),
            )
        entry = matcher_view.token_multipliers[index]
        if entry.multiplier == 0:
            raise InvalidIncentiveToken(
                "Matcher does not match this currency",
                epoch=epoch, matcher=matcher, token=entry.token,
            )
        if index in pair_view.applied_multipliers:
            raise NonBaseMatchAlreadyApplied(
                "Multiplier already applied to this target",
                epoch=epoch, matcher=matcher, target=target, index=index,
            )

        raw_amount = self._store.get_non_base(epoch, entry.token, target)
        if raw_amount == 0:
            raise ZeroAmount(
                "No non-base incentive to convert",
                epoch=epoch, target=target, token=entry.token,
            )
        if not matcher_view.has_budget:
            raise MatcherHasNoBudget(
                "Matcher has no budget for this epoch", epoch=epoch, matcher=matcher,
            )

        adjusted = mul_wad_down(raw_amount, entry.multiplier, "non_base_incentive")
        record = self._store.ensure_matcher(epoch, matcher)
        pair = self._store.ensure_match_reward(epoch, matcher, target)
        reward = self._store.get_reward(epoch, target)
        totals = self._store.get_totals(epoch)

        record.non_base_external_incentives = checked_add(
            record.non_base_external_incentives, adjusted, "non_base_incentive",
        )
        pair.non_base_external_incentives = checked_add(
            pair.non_base_external_incentives, adjusted, "non_base_incentive",
        )

        new_pair_weight = checked_mul(
            checked_add(reward.external_incentives, pair.non_base_external_incentives),
            reward.votes,
            "weighted_product",
        )
        matcher_aggregate = max(
            totals.info.weighted_product, record.non_base_weighted_product,
        )
        old_pair_weight = max(pair.non_base_weighted_product, reward.weighted_product)
        record.non_base_weighted_product = checked_add(
            checked_sub(matcher_aggregate, old_pair_weight, "weighted_product"),
            new_pair_weight,
            "weighted_product",
        )
        pair.non_base_weighted_product = new_pair_weight
        pair.applied_multipliers.add(index)
        return entry, adjusted
