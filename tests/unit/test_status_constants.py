"""
Unit tests for status constants.
"""

from muxwatch.status_constants import (
    ALL_STATES,
    ATTENTION_STATES,
    DEFAULT_WAIT_STATES,
    get_state_symbol,
    is_valid_state,
)


class TestStates:

    def test_valid_states(self):
        for state in ("busy", "idle", "waiting", "permission"):
            assert is_valid_state(state)
        assert not is_valid_state("sleeping")
        assert not is_valid_state("")

    def test_wait_defaults_exclude_busy(self):
        assert "busy" not in DEFAULT_WAIT_STATES
        assert set(DEFAULT_WAIT_STATES) <= set(ALL_STATES)

    def test_attention_states(self):
        assert ATTENTION_STATES == ("waiting", "permission")


class TestStateSymbols:

    def test_every_state_has_symbol(self):
        for state in ALL_STATES:
            emoji, color = get_state_symbol(state)
            assert emoji != "❔"
            assert color

    def test_unknown_state(self):
        assert get_state_symbol("mystery") == ("❔", "dim")
