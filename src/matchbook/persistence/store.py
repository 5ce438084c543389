"""Ledger store — the per-epoch records, keyed by composite keys.

Keys:
    (epoch)                     → EpochTotals, active-target list, matcher list, voter set
    (epoch, target)             → EpochInformation
    (epoch, matcher)            → MatcherRecord
    (epoch, matcher, target)    → MatchRewardRecord
    (epoch, token, target)      → raw non-base incentive amount

Records are created on first write (``ensure_*``) and never removed,
except for a matcher record cleared by rollover. Reads (``get_*``)
never create records: a missing key yields a fresh default that is not
inserted, so queries leave the store untouched.

Rollback is journaled per key. Inside a transaction, the first write
to a key saves that key's prior value; ``rollback`` replays the saved
values in reverse. A call therefore costs time proportional to the keys
it touches, never to the size of the ledger's history.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Callable, Optional

from matchbook.models.matching import (
    EpochInformation,
    EpochTotals,
    MatchRewardRecord,
    MatcherRecord,
)

_MISSING = object()


class LedgerStore:
    """In-memory store for every record the matching ledger owns.

    Usage:
        store = LedgerStore()
        store.begin()
        totals = store.ensure_totals(epoch)
        totals.match_budget += 10
        store.rollback()  # or store.commit()
    """

    def __init__(self) -> None:
        self._totals: dict[int, EpochTotals] = {}
        self._rewards: dict[tuple[int, str], EpochInformation] = {}
        self._matchers: dict[tuple[int, str], MatcherRecord] = {}
        self._match_rewards: dict[tuple[int, str, str], MatchRewardRecord] = {}
        self._non_base: dict[tuple[int, str, str], int] = {}
        self._active_targets: dict[int, list[str]] = {}
        self._matcher_lists: dict[int, list[str]] = {}
        self._voters: dict[int, set[str]] = {}

        self._journal: Optional[list[Callable[[], None]]] = None
        self._saved: set[tuple[str, Any]] = set()

    # ------------------------------------------------------------------
    # Epoch totals
    # ------------------------------------------------------------------

    def ensure_totals(self, epoch: int) -> EpochTotals:
        self._save("totals", self._totals, epoch)
        return self._totals.setdefault(epoch, EpochTotals())

    def get_totals(self, epoch: int) -> EpochTotals:
        return self._totals.get(epoch) or EpochTotals()

    # ------------------------------------------------------------------
    # Per-target records
    # ------------------------------------------------------------------

    def ensure_reward(self, epoch: int, target: str) -> EpochInformation:
        self._save("rewards", self._rewards, (epoch, target))
        return self._rewards.setdefault((epoch, target), EpochInformation())

    def get_reward(self, epoch: int, target: str) -> EpochInformation:
        return self._rewards.get((epoch, target)) or EpochInformation()

    def track_target(self, epoch: int, target: str) -> bool:
        """Mark a target active for the epoch. Returns True on first sight."""
        record = self.ensure_reward(epoch, target)
        if record.tracked:
            return False
        record.tracked = True
        self._save_length("active_targets", self._active_targets, epoch)
        self._active_targets.setdefault(epoch, []).append(target)
        return True

    def active_targets(self, epoch: int) -> list[str]:
        return list(self._active_targets.get(epoch, []))

    def tracked_rewards(self, epoch: int) -> list[EpochInformation]:
        return [self.get_reward(epoch, t) for t in self._active_targets.get(epoch, [])]

    # ------------------------------------------------------------------
    # Per-matcher records
    # ------------------------------------------------------------------

    def ensure_matcher(self, epoch: int, matcher: str) -> MatcherRecord:
        self._save("matchers", self._matchers, (epoch, matcher))
        return self._matchers.setdefault((epoch, matcher), MatcherRecord())

    def get_matcher(self, epoch: int, matcher: str) -> MatcherRecord:
        return self._matchers.get((epoch, matcher)) or MatcherRecord()

    def delete_matcher(self, epoch: int, matcher: str) -> None:
        """Clear a matcher's record. The matcher stays in the epoch's list."""
        self._save("matchers", self._matchers, (epoch, matcher))
        self._matchers.pop((epoch, matcher), None)

    def append_matcher(self, epoch: int, matcher: str) -> None:
        self._save_length("matcher_lists", self._matcher_lists, epoch)
        self._matcher_lists.setdefault(epoch, []).append(matcher)

    def matchers(self, epoch: int) -> list[str]:
        return list(self._matcher_lists.get(epoch, []))

    # ------------------------------------------------------------------
    # Per-(matcher, target) records
    # ------------------------------------------------------------------

    def ensure_match_reward(
        self, epoch: int, matcher: str, target: str,
    ) -> MatchRewardRecord:
        key = (epoch, matcher, target)
        self._save("match_rewards", self._match_rewards, key)
        return self._match_rewards.setdefault(key, MatchRewardRecord())

    def get_match_reward(
        self, epoch: int, matcher: str, target: str,
    ) -> MatchRewardRecord:
        return self._match_rewards.get((epoch, matcher, target)) or MatchRewardRecord()

    # ------------------------------------------------------------------
    # Non-base incentives
    # ------------------------------------------------------------------

    def get_non_base(self, epoch: int, token: str, target: str) -> int:
        return self._non_base.get((epoch, token, target), 0)

    def set_non_base(self, epoch: int, token: str, target: str, amount: int) -> None:
        self._save("non_base", self._non_base, (epoch, token, target))
        self._non_base[(epoch, token, target)] = amount

    # ------------------------------------------------------------------
    # Voters
    # ------------------------------------------------------------------

    def has_voted(self, epoch: int, voter: str) -> bool:
        return voter in self._voters.get(epoch, set())

    def mark_voted(self, epoch: int, voter: str) -> None:
        voters = self._voters.setdefault(epoch, set())
        if voter in voters:
            return
        voters.add(voter)
        if self._journal is not None:
            self._journal.append(lambda: voters.discard(voter))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._journal is not None

    @property
    def journal_size(self) -> int:
        """Number of undo entries recorded by the open transaction."""
        return len(self._journal) if self._journal is not None else 0

    def begin(self) -> None:
        """Start journaling writes. Transactions do not nest."""
        if self._journal is not None:
            raise RuntimeError("LedgerStore transaction already open")
        self._journal = []
        self._saved = set()

    def commit(self) -> None:
        self._journal = None
        self._saved = set()

    def rollback(self) -> None:
        """Undo every write since ``begin``, newest first."""
        journal = self._journal or []
        self._journal = None
        self._saved = set()
        for undo in reversed(journal):
            undo()

    def _save(self, name: str, table: dict, key: Any) -> None:
        """Journal ``table[key]``'s prior value on its first write."""
        if self._journal is None or (name, key) in self._saved:
            return
        self._saved.add((name, key))
        prior = deepcopy(table[key]) if key in table else _MISSING

        def undo() -> None:
            if prior is _MISSING:
                table.pop(key, None)
            else:
                table[key] = prior

        self._journal.append(undo)

    def _save_length(self, name: str, table: dict[int, list[str]], key: int) -> None:
        """Journal an append-only list by its prior length."""
        if self._journal is None or (name, key) in self._saved:
            return
        self._saved.add((name, key))
        existed = key in table
        length = len(table[key]) if existed else 0

        def undo() -> None:
            if existed:
                del table[key][length:]
            else:
                table.pop(key, None)

        self._journal.append(undo)
