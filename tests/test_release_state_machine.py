"""
Tests for the release state machine.
"""
import pytest

from settlement.execution.release_state_machine import (
    VALID_TRANSITIONS,
    InvalidTransition,
    ReleaseState,
    ReleaseStateMachine,
)

HAPPY_PATH = [
    ReleaseState.WALLET_RESOLVED,
    ReleaseState.FUNDED,
    ReleaseState.BALANCE_PROBED,
    ReleaseState.SPLIT_COMPUTED,
    ReleaseState.FEE_TRANSFERRED,
    ReleaseState.SELLER_TRANSFERRED,
    ReleaseState.RELEASED,
]


class TestReleaseStateMachine:
    def test_happy_path(self):
        sm = ReleaseStateMachine()
        attempt = sm.start("o-1")
        for state in HAPPY_PATH:
            sm.transition(attempt, state)
        assert attempt.state is ReleaseState.RELEASED
        assert attempt.is_terminal
        assert attempt.history()[0] == "IDLE"
        assert attempt.history()[-1] == "RELEASED"
        assert sm.get_stats()["released"] == 1

    def test_skipping_a_step_is_blocked(self):
        sm = ReleaseStateMachine()
        attempt = sm.start("o-1")
        with pytest.raises(InvalidTransition):
            sm.transition(attempt, ReleaseState.FUNDED)
        assert attempt.state is ReleaseState.IDLE
        assert sm.get_stats()["invalid_transitions_blocked"] == 1

    def test_failure_records_reason(self):
        sm = ReleaseStateMachine()
        attempt = sm.start("o-1")
        sm.transition(attempt, ReleaseState.WALLET_RESOLVED)
        sm.transition(attempt, ReleaseState.FAILED, reason="EMPTY_BALANCE")
        assert attempt.reason == "EMPTY_BALANCE"
        assert attempt.is_terminal
        assert sm.get_stats()["failed"] == 1

    def test_terminal_states_have_no_exits(self):
        assert VALID_TRANSITIONS[ReleaseState.RELEASED] == []
        assert VALID_TRANSITIONS[ReleaseState.FAILED] == []

    def test_seller_transfer_cannot_fail(self):
        assert not ReleaseStateMachine.is_valid_transition(ReleaseState.SELLER_TRANSFERRED, ReleaseState.FAILED)

    @pytest.mark.parametrize("state", HAPPY_PATH[:-2])
    def test_every_pre_payout_state_can_fail(self, state):
        assert ReleaseStateMachine.is_valid_transition(state, ReleaseState.FAILED)

    def test_transition_metadata_is_kept(self):
        sm = ReleaseStateMachine()
        attempt = sm.start("o-1")
        sm.transition(attempt, ReleaseState.WALLET_RESOLVED, seller="EQ-s")
        assert attempt.transitions[0].metadata == {"seller": "EQ-s"}
