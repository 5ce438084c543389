"""Append-only event log — the durable history of the matching ledger.

Every state change produces an event record that is appended to the log.
Events are immutable once written. The log serves as:
1. The audit trail for budget, incentive, vote, veto and payout actions.
2. The input external indexers use to reconstruct state transitions.

Each record carries a SHA-256 hash of its canonical JSON form, so a
persisted log can be verified line by line on recovery.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of ledger events."""
    MATCHING_BUDGET_ADDED = "matching_budget_added"
    MATCHING_BUDGET_ROLLED_OVER = "matching_budget_rolled_over"
    INCENTIVE_ADDED = "incentive_added"
    NON_BASE_INCENTIVE_ADDED = "non_base_incentive_added"
    NON_BASE_MATCH_APPLIED = "non_base_match_applied"
    VOTE_CAST = "vote_cast"
    TOKEN_MULTIPLIERS_SET = "token_multipliers_set"
    VETO_CAST = "veto_cast"
    DISTRIBUTION_EXECUTED = "distribution_executed"


def _canonical_digest(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the ledger history.

    The event_hash is computed at creation time from the canonical JSON
    of every other field.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_digest(
                event_id, event_kind.value, ts_str, actor_id, payload,
            ),
        )


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted.
    The log can be persisted to a JSONL file (one JSON object per line)
    and loaded back for recovery. Events are indexed by kind and by the
    epochs their payload names, so filtered reads do not scan history.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._by_kind: dict[EventKind, list[EventRecord]] = {}
        self._by_epoch: dict[int, list[EventRecord]] = {}

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        self.append_batch([event])

    def append_batch(self, events: list[EventRecord]) -> None:
        """Append events all-or-nothing.

        Every ID is checked before anything is written, and the batch
        reaches the file in a single write. If the write fails, memory
        is left untouched.
        """
        seen: set[str] = set()
        for event in events:
            if event.event_id in self._event_ids or event.event_id in seen:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            seen.add(event.event_id)

        if self._storage_path and events:
            self._append_to_file(events)

        for event in events:
            self._add(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return list(self._by_kind.get(kind, []))

    def events_for_epoch(
        self,
        epoch: int,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Return events whose payload references ``epoch``."""
        matching = self._by_epoch.get(epoch, [])
        if kind is None:
            return list(matching)
        return [e for e in matching if e.event_kind == kind]

    @property
    def count(self) -> int:
        return len(self._events)

    def _add(self, event: EventRecord) -> None:
        self._events.append(event)
        self._event_ids.add(event.event_id)
        self._by_kind.setdefault(event.event_kind, []).append(event)
        epochs = {event.payload.get(k) for k in ("epoch", "new_epoch")}
        for epoch in epochs:
            if isinstance(epoch, int):
                self._by_epoch.setdefault(epoch, []).append(event)

    def _append_to_file(self, events: list[EventRecord]) -> None:
        """Append events to the JSONL file in one write."""
        lines = []
        for event in events:
            record = {
                "event_id": event.event_id,
                "event_kind": event.event_kind.value,
                "timestamp_utc": event.timestamp_utc,
                "actor_id": event.actor_id,
                "payload": event.payload,
                "event_hash": event.event_hash,
            }
            lines.append(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write("".join(lines))

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs (replay protection on recovery).
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_digest(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                self._add(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
