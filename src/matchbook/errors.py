"""Error taxonomy for the matching ledger.

Every rejection is synchronous and final: the caller corrects the violated
precondition and resubmits. Nothing is queued or retried internally.

Each error carries a stable ``code`` and a ``context`` dict (epoch, actor,
target, offending value) so a failure can be diagnosed without replaying
ledger state.

Categories:
    PhaseViolation          — epoch-window preconditions not met
    AuthorizationViolation  — wrong caller, or a re-entrant call
    OneShotViolation        — second vote / veto / distribution / multiplier set
    ValueViolation          — zero amounts, bad vote shapes, missing multipliers
    ReferenceViolation      — misaligned epoch, uncertified target
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for every rejection raised by the matching ledger."""

    code = "ledger_error"

    def __init__(self, message: str = "", **context: Any) -> None:
        self.message = message or self.code
        self.context: dict[str, Any] = context
        super().__init__(self.message)

    def __str__(self) -> str:
        if not self.context:
            return f"{self.code}: {self.message}"
        details = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{self.code}: {self.message} ({details})"


class PhaseViolation(LedgerError):
    code = "phase_violation"


class AuthorizationViolation(LedgerError):
    code = "authorization_violation"


class OneShotViolation(LedgerError):
    code = "one_shot_violation"


class ValueViolation(LedgerError, ValueError):
    code = "value_violation"


class ReferenceViolation(LedgerError):
    code = "reference_violation"


# Phase violations

class EpochHasEnded(PhaseViolation):
    code = "epoch_has_ended"


class EpochHasNotEnded(PhaseViolation):
    code = "epoch_has_not_ended"


class VotePeriodNotActive(PhaseViolation):
    code = "vote_period_not_active"


class VetoPeriodNotActive(PhaseViolation):
    code = "veto_period_not_active"


class VetoPeriodHasNotEnded(PhaseViolation):
    code = "veto_period_has_not_ended"


# Authorization violations

class NotPermissionedCaller(AuthorizationViolation):
    code = "not_permissioned_caller"


class ReentrantCall(AuthorizationViolation):
    code = "reentrant_call"


# One-shot violations

class SenderHasAlreadyVoted(OneShotViolation):
    code = "sender_has_already_voted"


class AlreadyVetoed(OneShotViolation):
    code = "already_vetoed"


class EpochAlreadyDistributed(OneShotViolation):
    code = "epoch_already_distributed"


class TokenMultipliersAlreadySet(OneShotViolation):
    code = "token_multipliers_already_set"


class NonBaseMatchAlreadyApplied(OneShotViolation):
    code = "non_base_match_already_applied"


class IllegalMatchTransition(OneShotViolation):
    code = "illegal_match_transition"


# Value violations

class ZeroAmount(ValueViolation):
    code = "zero_amount"


class NegativeAmount(ValueViolation):
    code = "negative_amount"


class NonIntegerAmount(ValueViolation, TypeError):
    code = "non_integer_amount"


class AmountOverflow(ValueViolation):
    code = "amount_overflow"


class SenderHasNoVotingPower(ValueViolation):
    code = "sender_has_no_voting_power"


class InvalidTargetOrder(ValueViolation):
    code = "invalid_target_order"


class InvalidVote(ValueViolation):
    code = "invalid_vote"


class LengthMismatch(ValueViolation):
    code = "length_mismatch"


class InvalidIncentiveToken(ValueViolation):
    code = "invalid_incentive_token"


class InvalidMultiplierIndex(ValueViolation):
    code = "invalid_multiplier_index"


class MatcherHasNoBudget(ValueViolation):
    code = "matcher_has_no_budget"


# Reference violations

class InvalidEpoch(ReferenceViolation):
    code = "invalid_epoch"


class TargetNotCertified(ReferenceViolation):
    code = "target_not_certified"


class TargetHasNoStakingOption(ReferenceViolation):
    code = "target_has_no_staking_option"
