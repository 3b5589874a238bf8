"""
CallSync — State Updates

Every write to the view goes through one of these.  Producers build an
update and hand it to the session store; the store's single writer task
calls `apply()` on each in FIFO order, so two producers can never
interleave half of one change with half of another.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Generic, List, Optional, Tuple, TypeVar

from .models import (
    ChatMessage,
    FocusTarget,
    HandRaiseEvent,
    MediaFrame,
    Participant,
    PickerState,
    Screen,
    SessionConnectionState,
)
from .state_machine import focus_picker, toggle_picker

if TYPE_CHECKING:
    from .store import SessionStore

T = TypeVar("T")


class Update:
    """Base class.  `apply` runs on the store's writer task only."""

    def apply(self, store: "SessionStore") -> Any:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return type(self).__name__


# ---------------------------------------------------------------------------
# Screen lifecycle
# ---------------------------------------------------------------------------

@dataclass
class EnterCall(Update):
    reason: str = "connect accepted"

    def apply(self, store: "SessionStore") -> None:
        store.machine.transition(Screen.CALL, reason=self.reason)
        store.view.screen = store.machine.screen
        store.view.notice = None


@dataclass
class ResetSession(Update):
    """Atomic call → home teardown of every session-scoped value."""
    reason: str = "hang up"

    def apply(self, store: "SessionStore") -> None:
        store.machine.transition(Screen.HOME, reason=self.reason)
        store.view.screen = store.machine.screen
        store.view.reset_session()
        store.frames.clear()


# ---------------------------------------------------------------------------
# Pull snapshots
# ---------------------------------------------------------------------------

@dataclass
class Pull(Generic[T]):
    """Outcome of one getter call inside a poll tick."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _dedupe(messages: List[ChatMessage]) -> List[ChatMessage]:
    seen = set()
    ordered: List[ChatMessage] = []
    for msg in messages:
        if msg.id in seen:
            continue
        seen.add(msg.id)
        ordered.append(msg)
    return ordered


@dataclass
class ApplyPoll(Update):
    """
    Everything one reconciliation tick pulled, applied as a unit.
    A field left as None was not attempted this tick and is untouched.
    """
    connection: Optional[Pull[SessionConnectionState]] = None
    participants: Optional[Pull[List[Participant]]] = None
    messages: Optional[Pull[List[ChatMessage]]] = None
    degraded: bool = False

    def apply(self, store: "SessionStore") -> None:
        view = store.view
        if self.connection is not None:
            if self.connection.ok:
                view.connection.refresh(self.connection.value)
            else:
                view.connection.miss()
        if self.participants is not None:
            if self.participants.ok:
                view.participants.refresh({p.id: p for p in self.participants.value or []})
            else:
                view.participants.miss()
        if self.messages is not None:
            if self.messages.ok:
                view.messages.refresh(_dedupe(self.messages.value or []))
            else:
                view.messages.miss()
        view.degraded = self.degraded


# ---------------------------------------------------------------------------
# Push events
# ---------------------------------------------------------------------------

@dataclass
class UpsertFrame(Update):
    frame: MediaFrame

    def apply(self, store: "SessionStore") -> None:
        store.frames.put(self.frame)


@dataclass
class HandRaiseChanged(Update):
    event: HandRaiseEvent

    def apply(self, store: "SessionStore") -> None:
        hands = store.view.hand_raise_map
        if self.event.raised and self.event.position > 0:
            hands[self.event.participant_id] = self.event.position
        else:
            hands.pop(self.event.participant_id, None)


@dataclass
class SetHandRaised(Update):
    raised: bool

    def apply(self, store: "SessionStore") -> None:
        store.view.hand_raised = self.raised


@dataclass
class SetUnreadCount(Update):
    count: int

    def apply(self, store: "SessionStore") -> None:
        store.view.unread_count = max(0, int(self.count))


# ---------------------------------------------------------------------------
# Optimistic device toggles
# ---------------------------------------------------------------------------

_DEVICES = ("mic", "camera")


def _device_flag(store: "SessionStore", device: str):
    if device not in _DEVICES:
        raise ValueError(f"unknown device {device!r}")
    return store.view.mic_enabled if device == "mic" else store.view.camera_enabled


@dataclass
class BeginToggle(Update):
    """
    Apply the new value locally.  `value=None` flips whatever is shown.
    Returns (token, value); the token is needed to resolve it.
    """
    device: str
    value: Optional[bool] = None

    def apply(self, store: "SessionStore") -> Tuple[int, bool]:
        flag = _device_flag(store, self.device)
        value = (not flag.value) if self.value is None else self.value
        return flag.begin(value), value


@dataclass
class ResolveToggle(Update):
    device: str
    token: int
    value: bool
    ok: bool

    def apply(self, store: "SessionStore") -> None:
        flag = _device_flag(store, self.device)
        if self.ok:
            flag.confirm(self.token, self.value)
        else:
            flag.rollback(self.token)


# ---------------------------------------------------------------------------
# Chat panel
# ---------------------------------------------------------------------------

@dataclass
class SetChatOpen(Update):
    """Opening the panel zeroes the unread counter.  Returns the prior values."""
    open: bool

    def apply(self, store: "SessionStore") -> Tuple[bool, int]:
        view = store.view
        prior = (view.chat_open, view.unread_count)
        view.chat_open = self.open
        if self.open:
            view.unread_count = 0
        return prior


@dataclass
class RestoreChat(Update):
    """Roll back a failed SetChatOpen."""
    chat_open: bool
    unread_count: int

    def apply(self, store: "SessionStore") -> None:
        view = store.view
        view.chat_open = self.chat_open
        # a push that landed meanwhile is authoritative, keep it
        if view.unread_count == 0:
            view.unread_count = self.unread_count


# ---------------------------------------------------------------------------
# Device pickers and selection
# ---------------------------------------------------------------------------

@dataclass
class TogglePicker(Update):
    kind: PickerState

    def apply(self, store: "SessionStore") -> PickerState:
        if store.machine.in_call:
            store.view.picker = toggle_picker(store.view.picker, self.kind)
        return store.view.picker


@dataclass
class Focus(Update):
    target: FocusTarget

    def apply(self, store: "SessionStore") -> PickerState:
        store.view.picker = focus_picker(store.view.picker, self.target)
        return store.view.picker


@dataclass
class SelectDevice(Update):
    kind: str
    device_id: Optional[str]

    def apply(self, store: "SessionStore") -> None:
        selection = store.view.device_selection
        if self.kind == "audio_input":
            selection.audio_input = self.device_id
        elif self.kind == "video_input":
            selection.video_input = self.device_id
        else:
            raise ValueError(f"unknown device kind {self.kind!r}")
        store.view.picker = PickerState.NONE


# ---------------------------------------------------------------------------
# Notices
# ---------------------------------------------------------------------------

@dataclass
class SetNotice(Update):
    message: Optional[str]

    def apply(self, store: "SessionStore") -> None:
        store.view.notice = self.message


def describe(update: Update) -> Dict[str, Any]:
    """Compact log form.  Never includes frame data."""
    if isinstance(update, UpsertFrame):
        return {"update": update.name, "track_id": update.frame.track_id}
    return {"update": update.name}
