"""Vote weight engine — incremental maintenance of the weighted product.

A target's weighted product is ``external_incentives * votes``. The epoch
aggregate is the sum of that value over all tracked targets, and the vote
budget is later distributed in proportion to it.

Recomputing the sum at settlement would cost a scan over every target.
Instead each change to a target's inputs diffs its contribution into the
aggregate: subtract the stored old weight, add the new one, store the new
one. The aggregate therefore never drifts from the true sum.
"""

from __future__ import annotations

from matchbook.fixed_point import checked_add, checked_mul, checked_sub
from matchbook.persistence.store import LedgerStore


class VoteWeightEngine:
    """Recompute-and-diff helper for per-target weighted products."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def recompute(self, epoch: int, target: str) -> int:
        """Refresh ``target``'s weighted product and fold the diff into the epoch.

        No-op while the target has no votes or the epoch has no incentives
        or votes: no weight exists yet to track.

        Returns the target's weighted product after the update.
        """
        reward = self._store.ensure_reward(epoch, target)
        totals = self._store.ensure_totals(epoch)
        if reward.votes == 0 or totals.info.external_incentives == 0 or totals.info.votes == 0:
            return reward.weighted_product

        new_weight = checked_mul(
            reward.external_incentives, reward.votes, "weighted_product",
        )
        aggregate = checked_sub(
            totals.info.weighted_product, reward.weighted_product, "weighted_product",
        )
        totals.info.weighted_product = checked_add(aggregate, new_weight, "weighted_product")
        reward.weighted_product = new_weight
        return new_weight

    def drift(self, epoch: int) -> int:
        """Aggregate minus the true sum over tracked targets. Always 0."""
        true_sum = sum(r.weighted_product for r in self._store.tracked_rewards(epoch))
        return self._store.get_totals(epoch).info.weighted_product - true_sum
