"""Ledger persistence — composite-keyed store and append-only event log."""

from matchbook.persistence.event_log import EventKind, EventLog, EventRecord
from matchbook.persistence.store import LedgerStore

__all__ = ["EventKind", "EventLog", "EventRecord", "LedgerStore"]
