"""Tests for the matching ledger service — atomicity, guards, events, queries.

Proves that the facade:
- rolls every mutation back when a collaborator fails
- journals only the records a call touches
- rejects amounts that would overflow, leaving state untouched
- rejects re-entrant calls from collaborators
- gates incentives on registry eligibility and the permissioned caller
- appends audit events only for successful calls
"""

import logging
from pathlib import Path

import pytest

from matchbook.errors import (
    AmountOverflow,
    AuthorizationViolation,
    InvalidEpoch,
    InvalidIncentiveToken,
    NonIntegerAmount,
    NotPermissionedCaller,
    ReentrantCall,
    TargetHasNoStakingOption,
    TargetNotCertified,
)
from matchbook.epoch.clock import EpochPhase
from matchbook.fixed_point import MAX_AMOUNT, WAD
from matchbook.models.matching import MatchState, TokenMultiplier
from matchbook.persistence import store as store_module
from matchbook.persistence.event_log import EventKind, EventLog
from matchbook.persistence.store import LedgerStore
from matchbook.policy.params import MatchingParams
from matchbook.service import MatchingLedger

from conftest import (
    EPOCH,
    FUNDING_AT,
    NEXT_EPOCH,
    PERIOD,
    SETTLED_AT,
    VETO_AT,
    VOTING_AT,
    CustodyFailure,
    FakeCustody,
    FakeRegistry,
    FakeVotingPower,
)


class TestAtomicity:
    def test_failed_deposit_leaves_no_trace(
        self, ledger: MatchingLedger, custody: FakeCustody,
    ) -> None:
        custody.fail_in = True
        with pytest.raises(CustodyFailure):
            ledger.add_matching_budget("m1", 100, 100, EPOCH, now=FUNDING_AT)
        assert ledger.matchers(EPOCH) == []
        assert ledger.epoch_totals(EPOCH).match_budget == 0
        assert ledger.events() == []

    def test_failed_incentive_leaves_no_trace(
        self, ledger: MatchingLedger, custody: FakeCustody,
    ) -> None:
        custody.fail_in = True
        with pytest.raises(CustodyFailure):
            ledger.add_incentives("briber", "target_a", 50, now=FUNDING_AT)
        assert ledger.active_targets(EPOCH) == []
        assert ledger.reward_checkpoint(EPOCH, "target_a").external_incentives == 0

    def test_failed_payout_can_be_retried(
        self, ledger: MatchingLedger, custody: FakeCustody,
    ) -> None:
        ledger.add_matching_budget("m1", 100, 0, EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)
        custody.fail_out = True
        with pytest.raises(CustodyFailure):
            ledger.distribute("anyone", "target_a", "m1", EPOCH, now=SETTLED_AT)
        assert ledger.match_reward_checkpoint(EPOCH, "m1", "target_a").state == MatchState.OPEN
        assert ledger.events(EventKind.DISTRIBUTION_EXECUTED) == []

        custody.fail_out = False
        result = ledger.distribute("anyone", "target_a", "m1", EPOCH, now=SETTLED_AT)
        assert result.total_match == 40

    def test_failed_notification_rolls_back(
        self, ledger: MatchingLedger, registry: FakeRegistry,
    ) -> None:
        ledger.add_matching_budget("m1", 100, 0, EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)

        def _refuse() -> None:
            raise RuntimeError("stream rejected")

        registry.targets["target_a"].on_notify = _refuse
        with pytest.raises(RuntimeError, match="stream rejected"):
            ledger.distribute("anyone", "target_a", "m1", EPOCH, now=SETTLED_AT)
        assert not ledger.match_reward_checkpoint(EPOCH, "m1", "target_a").has_distributed


    def test_rollback_cost_independent_of_history(
        self,
        params: MatchingParams,
        registry: FakeRegistry,
        voting_power: FakeVotingPower,
        custody: FakeCustody,
        store: LedgerStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        ledger = MatchingLedger(
            params, registry, voting_power, custody, clock=lambda: FUNDING_AT, store=store,
        )
        for n in range(200):
            ledger.add_matching_budget(f"m{n}", 10, 10, EPOCH, now=FUNDING_AT)
            ledger.add_incentives("briber", "target_a", 1, now=FUNDING_AT)

        copied: list[object] = []
        real_deepcopy = store_module.deepcopy

        def _counting_deepcopy(value, *args):
            copied.append(value)
            return real_deepcopy(value, *args)

        monkeypatch.setattr(store_module, "deepcopy", _counting_deepcopy)
        ledger.add_matching_budget("m0", 5, 0, EPOCH, now=FUNDING_AT)

        assert len(copied) == 2
        assert not any(isinstance(value, (dict, list, set)) for value in copied)
        assert not store.in_transaction
        assert ledger.matcher_checkpoint(EPOCH, "m0").match_budget == 15

    def test_failed_rollover_with_unwritable_log_restores_state(
        self,
        params: MatchingParams,
        registry: FakeRegistry,
        voting_power: FakeVotingPower,
        custody: FakeCustody,
        tmp_path: Path,
    ) -> None:
        path = tmp_path / "events.jsonl"
        ledger = MatchingLedger(
            params, registry, voting_power, custody,
            event_log=EventLog(path), clock=lambda: FUNDING_AT,
        )
        ledger.add_matching_budget("m1", 150, 80, EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_b", 60, now=FUNDING_AT)
        ledger.vote("voter_1", ["target_a", "target_b"], [1, 1], now=VOTING_AT)
        before = len(ledger.events())
        later = NEXT_EPOCH + PERIOD

        path.unlink()
        path.mkdir()
        with pytest.raises(OSError):
            ledger.rollover_excess_budget("m1", EPOCH, later, now=SETTLED_AT)
        assert len(ledger.events()) == before
        assert ledger.matcher_checkpoint(EPOCH, "m1").match_budget == 150
        assert ledger.matchers(later) == []

        path.rmdir()
        ledger.rollover_excess_budget("m1", EPOCH, later, now=SETTLED_AT)
        assert [e.event_id for e in ledger.events()[before:]] == [
            f"EVT-{before + 1:08d}",
            f"EVT-{before + 2:08d}",
        ]
        assert ledger.matcher_checkpoint(later, "m1").match_budget == 50


class TestOverflow:
    def test_matcher_budget_overflow_rejected(self, ledger: MatchingLedger) -> None:
        ledger.add_matching_budget("m1", MAX_AMOUNT, 0, EPOCH, now=FUNDING_AT)
        with pytest.raises(AmountOverflow):
            ledger.add_matching_budget("m1", 1, 0, EPOCH, now=FUNDING_AT)
        assert ledger.matcher_checkpoint(EPOCH, "m1").match_budget == MAX_AMOUNT
        assert ledger.epoch_totals(EPOCH).match_budget == MAX_AMOUNT
        assert ledger.matchers(EPOCH) == ["m1"]
        assert len(ledger.events()) == 1

    def test_epoch_budget_overflow_discards_new_matcher(self, ledger: MatchingLedger) -> None:
        ledger.add_matching_budget("m1", MAX_AMOUNT, 0, EPOCH, now=FUNDING_AT)
        with pytest.raises(AmountOverflow):
            ledger.add_matching_budget("m2", 1, 0, EPOCH, now=FUNDING_AT)
        assert ledger.matchers(EPOCH) == ["m1"]
        assert ledger.matcher_checkpoint(EPOCH, "m2").match_budget == 0
        assert ledger.epoch_totals(EPOCH).match_budget == MAX_AMOUNT

    def test_incentive_overflow_rejected(self, ledger: MatchingLedger) -> None:
        ledger.add_incentives("briber", "target_a", MAX_AMOUNT, now=FUNDING_AT)
        with pytest.raises(AmountOverflow):
            ledger.add_incentives("briber", "target_a", 1, now=FUNDING_AT)
        with pytest.raises(AmountOverflow):
            ledger.add_incentives("briber", "target_b", 1, now=FUNDING_AT)
        assert ledger.reward_checkpoint(EPOCH, "target_a").external_incentives == MAX_AMOUNT
        assert ledger.epoch_totals(EPOCH).info.external_incentives == MAX_AMOUNT
        assert ledger.active_targets(EPOCH) == ["target_a"]
        assert len(ledger.events(EventKind.INCENTIVE_ADDED)) == 1

    def test_weighted_product_overflow_rejects_vote(self, ledger: MatchingLedger) -> None:
        ledger.add_incentives("briber", "target_a", MAX_AMOUNT, now=FUNDING_AT)
        with pytest.raises(AmountOverflow):
            ledger.vote("voter_1", ["target_a"], [1], now=VOTING_AT)
        assert not ledger.has_voted(EPOCH, "voter_1")
        assert ledger.reward_checkpoint(EPOCH, "target_a").votes == 0
        assert ledger.epoch_totals(EPOCH).info.votes == 0
        assert ledger.events(EventKind.VOTE_CAST) == []

    def test_non_integer_amount_rejected(self, ledger: MatchingLedger) -> None:
        with pytest.raises(NonIntegerAmount):
            ledger.add_incentives("briber", "target_a", 1.5, now=FUNDING_AT)  # type: ignore[arg-type]
        assert ledger.active_targets(EPOCH) == []
        assert ledger.events() == []

class TestReentrancy:
    def test_collaborator_callback_rejected(
        self, ledger: MatchingLedger, custody: FakeCustody,
    ) -> None:
        custody.on_transfer = lambda: ledger.add_incentives(
            "attacker", "target_a", 1, now=FUNDING_AT,
        )
        with pytest.raises(ReentrantCall):
            ledger.add_matching_budget("m1", 100, 0, EPOCH, now=FUNDING_AT)
        assert ledger.matchers(EPOCH) == []
        assert ledger.active_targets(EPOCH) == []

    def test_guard_released_after_failure(
        self, ledger: MatchingLedger, custody: FakeCustody,
    ) -> None:
        custody.fail_in = True
        with pytest.raises(CustodyFailure):
            ledger.add_matching_budget("m1", 100, 0, EPOCH, now=FUNDING_AT)
        custody.fail_in = False
        ledger.add_matching_budget("m1", 100, 0, EPOCH, now=FUNDING_AT)
        assert ledger.matchers(EPOCH) == ["m1"]


class TestIncentiveGates:
    def test_uncertified_target_rejected(
        self, ledger: MatchingLedger, registry: FakeRegistry,
    ) -> None:
        registry.certified.discard("target_a")
        with pytest.raises(TargetNotCertified):
            ledger.add_incentives("briber", "target_a", 10, now=FUNDING_AT)

    def test_target_without_staking_option_rejected(
        self, ledger: MatchingLedger, registry: FakeRegistry,
    ) -> None:
        registry.stakeable.discard("target_a")
        with pytest.raises(TargetHasNoStakingOption):
            ledger.add_non_base_token_incentives("briber", "target_a", 10, "USDX", now=FUNDING_AT)

    def test_base_token_on_non_base_path_rejected(self, ledger: MatchingLedger) -> None:
        with pytest.raises(InvalidIncentiveToken):
            ledger.add_non_base_token_incentives(
                "briber", "target_a", 10, ledger.base_token, now=FUNDING_AT,
            )

    def test_deposits_transfer_into_custody(
        self, ledger: MatchingLedger, custody: FakeCustody,
    ) -> None:
        ledger.add_matching_budget("m1", 100, 20, EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)
        ledger.add_non_base_token_incentives("briber", "target_b", 7, "USDX", now=FUNDING_AT)
        assert custody.transfers_in == [
            ("BASE", "m1", 120),
            ("BASE", "briber", 40),
            ("USDX", "briber", 7),
        ]


class TestPermissionedIncentives:
    def test_designated_caller_base_token(self, ledger: MatchingLedger) -> None:
        ledger.permissioned_add_incentives("bridge", "target_a", 30, "BASE", now=FUNDING_AT)
        assert ledger.reward_checkpoint(EPOCH, "target_a").external_incentives == 30
        assert len(ledger.events(EventKind.INCENTIVE_ADDED)) == 1

    def test_designated_caller_non_base_token(self, ledger: MatchingLedger) -> None:
        ledger.permissioned_add_incentives("bridge", "target_a", 30, "USDX", now=FUNDING_AT)
        assert ledger.non_base_incentive(EPOCH, "USDX", "target_a") == 30
        assert len(ledger.events(EventKind.NON_BASE_INCENTIVE_ADDED)) == 1

    def test_other_caller_rejected(self, ledger: MatchingLedger) -> None:
        with pytest.raises(NotPermissionedCaller):
            ledger.permissioned_add_incentives("briber", "target_a", 30, "BASE", now=FUNDING_AT)

    def test_no_designated_caller_rejects_everyone(self) -> None:
        ledger = MatchingLedger(
            MatchingParams(), FakeRegistry(), FakeVotingPower(), FakeCustody(),
        )
        with pytest.raises(NotPermissionedCaller):
            ledger.permissioned_add_incentives("bridge", "target_a", 30, "BASE", now=FUNDING_AT)

    def test_registry_still_applies(
        self, ledger: MatchingLedger, registry: FakeRegistry,
    ) -> None:
        registry.certified.discard("target_a")
        with pytest.raises(TargetNotCertified):
            ledger.permissioned_add_incentives("bridge", "target_a", 30, "BASE", now=FUNDING_AT)


class TestEvents:
    def test_one_vote_event_per_target(self, ledger: MatchingLedger) -> None:
        ledger.vote("voter_1", ["target_a", "target_b"], [1, 1], now=VOTING_AT)
        events = ledger.events(EventKind.VOTE_CAST)
        assert [e.payload["target"] for e in events] == ["target_a", "target_b"]
        assert all(e.payload["votes"] == WAD // 4 for e in events)
        assert all(e.actor_id == "voter_1" for e in events)

    def test_event_ids_are_sequential(self, ledger: MatchingLedger) -> None:
        ledger.add_matching_budget("m1", 100, 0, EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)
        assert [e.event_id for e in ledger.events()] == ["EVT-00000001", "EVT-00000002"]

    def test_budget_event_payload(self, ledger: MatchingLedger) -> None:
        ledger.add_matching_budget("m1", 100, 5, EPOCH, now=FUNDING_AT)
        ledger.add_matching_budget("m1", 1, 0, EPOCH, now=FUNDING_AT)
        first, second = ledger.events(EventKind.MATCHING_BUDGET_ADDED)
        assert first.payload["new_matcher"] is True
        assert second.payload["new_matcher"] is False
        assert first.payload["rollover"] is False

    def test_event_timestamp_follows_now(self, ledger: MatchingLedger) -> None:
        ledger.add_incentives("briber", "target_a", 40, now=0)
        assert ledger.events()[0].timestamp_utc == "1970-01-01T00:00:00Z"

    def test_rejected_call_emits_nothing(self, ledger: MatchingLedger) -> None:
        with pytest.raises(AuthorizationViolation):
            ledger.permissioned_add_incentives("briber", "target_a", 1, "BASE", now=FUNDING_AT)
        assert ledger.events() == []

    def test_rejections_are_logged(
        self, ledger: MatchingLedger, caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.DEBUG, logger="matchbook.service"):
            with pytest.raises(NotPermissionedCaller):
                ledger.permissioned_add_incentives("briber", "target_a", 1, "BASE", now=FUNDING_AT)
        assert "not_permissioned_caller" in caplog.text


class TestQueries:
    def test_pagination(self, ledger: MatchingLedger) -> None:
        for target in ("target_a", "target_b", "target_c"):
            ledger.add_incentives("briber", target, 10, now=FUNDING_AT)
        assert ledger.active_target_count(EPOCH) == 3
        assert ledger.active_targets(EPOCH) == ["target_a", "target_b", "target_c"]
        assert ledger.active_targets(EPOCH, 1, 2) == ["target_b"]
        assert ledger.active_targets(EPOCH, 1, 99) == ["target_b", "target_c"]
        assert ledger.active_targets(EPOCH, 3, 5) == []
        assert ledger.active_targets(EPOCH, 2, 1) == []

    def test_matcher_pagination(self, ledger: MatchingLedger) -> None:
        for matcher in ("m1", "m2", "m3"):
            ledger.add_matching_budget(matcher, 1, 0, EPOCH, now=FUNDING_AT)
        assert ledger.matcher_count(EPOCH) == 3
        assert ledger.matchers(EPOCH, 0, 2) == ["m1", "m2"]

    def test_queries_are_idempotent(self, ledger: MatchingLedger) -> None:
        ledger.add_matching_budget("m1", 100, 10, EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)
        ledger.vote("voter_1", ["target_a"], [1], now=VOTING_AT)
        reads = [
            lambda: ledger.epoch_totals(EPOCH),
            lambda: ledger.reward_checkpoint(EPOCH, "target_a"),
            lambda: ledger.matcher_checkpoint(EPOCH, "m1"),
            lambda: ledger.match_reward_checkpoint(EPOCH, "m1", "target_a"),
            lambda: ledger.active_targets(EPOCH),
            lambda: ledger.matchers(EPOCH),
            lambda: ledger.has_voted(EPOCH, "voter_1"),
            lambda: ledger.rollover_budget(EPOCH, "m1", now=SETTLED_AT),
            lambda: ledger.weighted_product_drift(EPOCH),
        ]
        for read in reads:
            assert read() == read()

    def test_query_results_are_copies(self, ledger: MatchingLedger) -> None:
        ledger.add_matching_budget("m1", 100, 10, EPOCH, now=FUNDING_AT)
        ledger.matcher_checkpoint(EPOCH, "m1").match_budget = 0
        ledger.epoch_totals(EPOCH).match_budget = 0
        assert ledger.matcher_checkpoint(EPOCH, "m1").match_budget == 100
        assert ledger.epoch_totals(EPOCH).match_budget == 100

    def test_unknown_keys_read_as_empty(self, ledger: MatchingLedger) -> None:
        assert ledger.matcher_checkpoint(EPOCH, "ghost").match_budget == 0
        assert ledger.match_reward_checkpoint(EPOCH, "ghost", "nowhere").state == MatchState.OPEN
        assert ledger.matchers(EPOCH) == []

    @pytest.mark.parametrize("query", [
        lambda lg: lg.epoch_totals(EPOCH + 1),
        lambda lg: lg.matcher_checkpoint(EPOCH + 1, "m1"),
        lambda lg: lg.active_targets(EPOCH + 1),
        lambda lg: lg.has_voted(EPOCH + 1, "voter_1"),
        lambda lg: lg.rollover_budget(EPOCH + 1, "m1", now=SETTLED_AT),
    ])
    def test_unaligned_epoch_rejected(self, ledger: MatchingLedger, query) -> None:
        with pytest.raises(InvalidEpoch):
            query(ledger)

    def test_clock_exposed(self, ledger: MatchingLedger) -> None:
        assert ledger.clock.phase(EPOCH, VETO_AT) == EpochPhase.VETO


class TestFullEpoch:
    def test_two_matchers_through_settlement(
        self, ledger: MatchingLedger, custody: FakeCustody, registry: FakeRegistry,
    ) -> None:
        # Funding
        ledger.add_matching_budget("m1", 50, 100, EPOCH, now=FUNDING_AT)
        ledger.add_matching_budget("m2", 500, 0, EPOCH, now=FUNDING_AT)
        ledger.set_token_multipliers("m2", [TokenMultiplier("USDX", 2 * WAD)], EPOCH, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_a", 40, now=FUNDING_AT)
        ledger.add_incentives("briber", "target_b", 60, now=FUNDING_AT)
        ledger.add_non_base_token_incentives("briber", "target_b", 10, "USDX", now=FUNDING_AT)

        # Voting
        ledger.vote("voter_1", ["target_a", "target_b"], [1, 1], now=VOTING_AT)
        assert ledger.weighted_product_drift(EPOCH) == 0

        # Veto window
        ledger.veto("m1", "target_b", now=VETO_AT)
        ledger.apply_non_base_token_match("anyone", "target_b", "m2", 0, EPOCH, now=VETO_AT)

        # Settlement
        a1 = ledger.distribute("anyone", "target_a", "m1", EPOCH, now=SETTLED_AT)
        b1 = ledger.distribute("anyone", "target_b", "m1", EPOCH, now=SETTLED_AT)
        a2 = ledger.distribute("anyone", "target_a", "m2", EPOCH, now=SETTLED_AT)
        b2 = ledger.distribute("anyone", "target_b", "m2", EPOCH, now=SETTLED_AT)

        assert (a1.incentive_match, a1.vote_match) == (40, 100)
        assert b1.vetoed and b1.total_match == 0
        assert a2.incentive_match == 40
        assert b2.incentive_match == 80
        assert registry.targets["target_a"].notifications == [
            (140, ledger.params.notify_period),
            (40, ledger.params.notify_period),
        ]
        assert sum(amount for _, _, amount in custody.transfers_out) == 260

        # Rollover
        m2_left = ledger.rollover_budget(EPOCH, "m2", now=SETTLED_AT)
        assert m2_left.match_rollover == 500 - 120
        ledger.rollover_excess_budget("m2", EPOCH, NEXT_EPOCH + PERIOD, now=SETTLED_AT)
        assert ledger.matcher_checkpoint(NEXT_EPOCH + PERIOD, "m2").match_budget == 380
        assert ledger.events(EventKind.DISTRIBUTION_EXECUTED)[-1].payload["total_match"] == 80
