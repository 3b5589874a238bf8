"""Tests for the screen lifecycle and the device-picker sub-state."""

import pytest

from callsync.core.models import FocusTarget, PickerState, Screen
from callsync.core.state_machine import ViewStateMachine, focus_picker, toggle_picker


class TestScreens:
    def test_starts_home(self):
        assert ViewStateMachine().screen is Screen.HOME

    def test_home_to_call_and_back(self):
        sm = ViewStateMachine()
        assert sm.transition(Screen.CALL, reason="connect accepted") is True
        assert sm.in_call
        assert sm.transition(Screen.HOME, reason="hang up") is True
        assert [h["to"] for h in sm.history] == ["call", "home"]

    def test_same_screen_is_noop(self):
        sm = ViewStateMachine()
        assert sm.transition(Screen.HOME) is False
        assert sm.history == []

    def test_callback_receives_transition(self):
        seen = []
        sm = ViewStateMachine(on_transition=lambda a, b, r: seen.append((a, b, r)))
        sm.transition(Screen.CALL, reason="x")
        assert seen == [(Screen.HOME, Screen.CALL, "x")]

    def test_callback_error_does_not_block_transition(self):
        def boom(*_):
            raise RuntimeError("listener bug")

        sm = ViewStateMachine(on_transition=boom)
        assert sm.transition(Screen.CALL) is True
        assert sm.screen is Screen.CALL

    def test_unknown_screen_raises(self):
        sm = ViewStateMachine()
        with pytest.raises(ValueError):
            sm.transition("lobby")
        assert sm.screen is Screen.HOME
        assert sm.history == []

    def test_screen_names_accepted(self):
        sm = ViewStateMachine()
        assert sm.transition("call") is True
        assert sm.screen is Screen.CALL

    def test_leaving_call_records_its_duration(self):
        sm = ViewStateMachine()
        sm.transition(Screen.CALL, reason="connect accepted")
        sm.transition(Screen.HOME, reason="hang up")
        entered, left = sm.history
        assert "call_ms" not in entered
        assert left["call_ms"] >= 0
        assert left["reason"] == "hang up"
        assert sm.calls_completed == 1


class TestPickers:
    def test_opening_one_closes_the_other(self):
        assert toggle_picker(PickerState.MIC, PickerState.CAMERA) is PickerState.CAMERA
        assert toggle_picker(PickerState.CAMERA, PickerState.MIC) is PickerState.MIC

    def test_toggling_open_picker_closes_it(self):
        assert toggle_picker(PickerState.MIC, PickerState.MIC) is PickerState.NONE

    def test_focus_inside_keeps_picker(self):
        assert focus_picker(PickerState.MIC, FocusTarget.MIC_PICKER) is PickerState.MIC

    def test_focus_elsewhere_closes_picker(self):
        assert focus_picker(PickerState.MIC, FocusTarget.ELSEWHERE) is PickerState.NONE
        assert focus_picker(PickerState.CAMERA, FocusTarget.MIC_PICKER) is PickerState.NONE

    def test_focus_with_nothing_open(self):
        assert focus_picker(PickerState.NONE, FocusTarget.ELSEWHERE) is PickerState.NONE
