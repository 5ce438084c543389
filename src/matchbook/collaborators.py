"""External collaborator contracts.

The matching ledger never custodies tokens, certifies targets, or computes
voting power itself. It consumes these interfaces:

    TargetRegistry     — which targets are eligible, and resolves them
    VotingPowerSource  — point-in-time voting-power snapshots
    TokenCustody       — escrow deposits and payouts
    RewardTarget       — receives a payout and streams it over a duration

Any implementation satisfying the Protocol can be plugged in. The ledger
engines never call these directly; the service layer does, strictly after
the ledger state change of the same call.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class RewardTarget(Protocol):
    """A reward-distribution destination that streams matched payouts."""

    def notify_reward_amount(self, amount: int, duration: int) -> int:
        """Begin streaming ``amount`` over ``duration`` seconds.

        Returns the duration actually applied.
        """
        ...


@runtime_checkable
class TargetRegistry(Protocol):
    """Certifies reward targets and resolves them for payout."""

    def is_certified(self, target: str) -> bool:
        ...

    def has_staking_option(self, target: str, base_token: str) -> bool:
        """True if the target offers a governance-token staking option."""
        ...

    def reward_target(self, target: str) -> RewardTarget:
        ...


@runtime_checkable
class VotingPowerSource(Protocol):
    """Answers historical voting-power queries."""

    def past_votes(self, account: str, timestamp: int) -> int:
        ...

    def past_total_supply(self, timestamp: int) -> int:
        ...


@runtime_checkable
class TokenCustody(Protocol):
    """Moves tokens between callers and the ledger's escrow.

    Implementations raise on failure; the ledger rolls back the call.
    """

    def transfer_in(self, token: str, sender: str, amount: int) -> None:
        ...

    def transfer_out(self, token: str, recipient: str, amount: int) -> None:
        ...
