"""Shared fakes and fixtures for matching ledger tests.

The fakes implement the collaborator Protocols in memory. Each records
the calls it receives so tests can assert on side effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import pytest

from matchbook.epoch.clock import EpochClock
from matchbook.persistence.store import LedgerStore
from matchbook.policy.params import MatchingParams
from matchbook.service import MatchingLedger


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

PERIOD = 1_209_600
PRE_VOTE = 604_800
VETO = 172_800

# A period-aligned epoch start well after the unix origin.
EPOCH = 2_000 * PERIOD
NEXT_EPOCH = EPOCH + PERIOD

FUNDING_AT = EPOCH + 100
VOTING_AT = EPOCH + PRE_VOTE + 100
VETO_AT = EPOCH + PERIOD + 100
SETTLED_AT = EPOCH + PERIOD + VETO + 100


class RecordingRewardTarget:
    """Reward target that records every notification."""

    def __init__(self, duration: Optional[int] = None) -> None:
        self.notifications: list[tuple[int, int]] = []
        self._duration = duration
        self.on_notify: Optional[Callable[[], None]] = None

    def notify_reward_amount(self, amount: int, duration: int) -> int:
        self.notifications.append((amount, duration))
        if self.on_notify is not None:
            self.on_notify()
        return duration if self._duration is None else self._duration


class FakeRegistry:
    """Registry where every known target is certified and stakeable."""

    def __init__(self, targets: tuple[str, ...] = ("target_a", "target_b", "target_c")) -> None:
        self.certified: set[str] = set(targets)
        self.stakeable: set[str] = set(targets)
        self.targets: dict[str, RecordingRewardTarget] = {
            t: RecordingRewardTarget() for t in targets
        }

    def is_certified(self, target: str) -> bool:
        return target in self.certified

    def has_staking_option(self, target: str, base_token: str) -> bool:
        return target in self.stakeable

    def reward_target(self, target: str) -> RecordingRewardTarget:
        return self.targets[target]


class FakeVotingPower:
    """Fixed voting balances, queried at any snapshot."""

    def __init__(self, balances: Optional[dict[str, int]] = None, supply: int = 100) -> None:
        self.balances = dict(balances or {})
        self.supply = supply
        self.queries: list[tuple[str, int]] = []

    def past_votes(self, account: str, timestamp: int) -> int:
        self.queries.append((account, timestamp))
        return self.balances.get(account, 0)

    def past_total_supply(self, timestamp: int) -> int:
        return self.supply


class CustodyFailure(RuntimeError):
    pass


@dataclass
class FakeCustody:
    """Custody that logs transfers and can be told to fail."""

    transfers_in: list[tuple[str, str, int]] = field(default_factory=list)
    transfers_out: list[tuple[str, str, int]] = field(default_factory=list)
    fail_in: bool = False
    fail_out: bool = False
    on_transfer: Optional[Callable[[], None]] = None

    def transfer_in(self, token: str, sender: str, amount: int) -> None:
        if self.on_transfer is not None:
            self.on_transfer()
        if self.fail_in:
            raise CustodyFailure(f"transfer_in of {amount} {token} from {sender} refused")
        self.transfers_in.append((token, sender, amount))

    def transfer_out(self, token: str, recipient: str, amount: int) -> None:
        if self.on_transfer is not None:
            self.on_transfer()
        if self.fail_out:
            raise CustodyFailure(f"transfer_out of {amount} {token} to {recipient} refused")
        self.transfers_out.append((token, recipient, amount))


@pytest.fixture
def params() -> MatchingParams:
    return MatchingParams(permissioned_caller="bridge")


@pytest.fixture
def clock(params: MatchingParams) -> EpochClock:
    return EpochClock(params)


@pytest.fixture
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def voting_power() -> FakeVotingPower:
    return FakeVotingPower({"voter_1": 50, "voter_2": 30, "voter_3": 20})


@pytest.fixture
def custody() -> FakeCustody:
    return FakeCustody()


@pytest.fixture
def ledger(
    params: MatchingParams,
    registry: FakeRegistry,
    voting_power: FakeVotingPower,
    custody: FakeCustody,
) -> MatchingLedger:
    return MatchingLedger(
        params, registry, voting_power, custody, clock=lambda: FUNDING_AT,
    )
