"""
CallSync — View State Machine

Two screens: HOME and CALL.  Every screen change goes through this
module and is logged.  The device-picker sub-state lives here too; it
only exists while in CALL.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Union

from .models import FocusTarget, PickerState, Screen

logger = logging.getLogger("callsync.view")


# Focus targets that count as "inside" each picker
_PICKER_REGION: Dict[PickerState, FocusTarget] = {
    PickerState.MIC: FocusTarget.MIC_PICKER,
    PickerState.CAMERA: FocusTarget.CAMERA_PICKER,
}


class ViewStateMachine:
    """
    Tracks which screen is up and how long each call lasted.

    Usage:
        sm = ViewStateMachine(on_transition=my_callback)
        sm.transition(Screen.CALL, reason="connect accepted")   # True
        sm.transition("call")                                    # False, already there
        sm.transition(Screen.HOME, reason="hang up")             # True, records the call
    """

    def __init__(
        self,
        on_transition: Optional[Callable[[Screen, Screen, str], None]] = None,
    ) -> None:
        self._screen = Screen.HOME
        self._on_transition = on_transition
        self._history: List[Dict] = []
        self._call_started: Optional[float] = None

    @property
    def screen(self) -> Screen:
        return self._screen

    @property
    def in_call(self) -> bool:
        return self._screen is Screen.CALL

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    @property
    def calls_completed(self) -> int:
        return sum(1 for h in self._history if h["to"] == Screen.HOME.value)

    def transition(self, target: Union[Screen, str], reason: str = "") -> bool:
        """
        Switch screens.  Returns False when `target` is already up.
        Raises ValueError for anything that is not a screen.
        """
        target = Screen(target)
        if target is self._screen:
            return False

        prev = self._screen
        entry: Dict = {
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": time.time(),
        }
        if target is Screen.CALL:
            self._call_started = time.monotonic()
        elif self._call_started is not None:
            entry["call_ms"] = round((time.monotonic() - self._call_started) * 1000, 1)
            self._call_started = None
        self._history.append(entry)
        self._screen = target

        if "call_ms" in entry:
            logger.info(f"VIEW: left call after {entry['call_ms'] / 1000:.1f}s ({reason or 'no reason'})")
        else:
            logger.info(f"VIEW: entered call ({reason or 'no reason'})")

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"View transition callback error: {e}")
        return True


# ---------------------------------------------------------------------------
# Device picker sub-state
# ---------------------------------------------------------------------------

def toggle_picker(current: PickerState, kind: PickerState) -> PickerState:
    """Open `kind` (closing the other one) or close it if it is already open."""
    if kind is PickerState.NONE or current is kind:
        return PickerState.NONE
    return kind


def focus_picker(current: PickerState, target: FocusTarget) -> PickerState:
    """Any interaction outside the open picker's region closes it."""
    if current is PickerState.NONE:
        return current
    if _PICKER_REGION[current] is target:
        return current
    return PickerState.NONE
