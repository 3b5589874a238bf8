"""
CallSync — Data Models

Dataclasses for every piece of data flowing between the engine and the
local view.  Engine payloads come in as plain mappings; each model owns
the translation from the engine's key names in `from_payload`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from .config import sync_cfg

T = TypeVar("T")


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key wins.  Engine payloads mix snake and camel case."""
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _require(payload: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValueError(f"{kind} payload must be an object, got {type(payload).__name__}")
    return payload


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionConnectionState(str, Enum):
    """Engine-owned connection state.  The client only observes it."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"

    @classmethod
    def parse(cls, raw: Any) -> "SessionConnectionState":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValueError(f"unknown connection state: {raw!r}") from None

    @property
    def is_live(self) -> bool:
        """States in which roster and chat snapshots are worth pulling."""
        return self in (SessionConnectionState.CONNECTED, SessionConnectionState.RECONNECTING)


class ConnectionQuality(str, Enum):
    UNKNOWN = "unknown"
    POOR = "poor"
    GOOD = "good"
    EXCELLENT = "excellent"

    @classmethod
    def parse(cls, raw: Any) -> "ConnectionQuality":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Screen(str, Enum):
    HOME = "home"
    CALL = "call"


class PickerState(str, Enum):
    """Which device picker is open.  At most one at a time."""
    NONE = "none"
    MIC = "mic"
    CAMERA = "camera"


class FocusTarget(str, Enum):
    """Where a pointer/focus interaction landed."""
    MIC_PICKER = "mic_picker"
    CAMERA_PICKER = "camera_picker"
    ELSEWHERE = "elsewhere"


class SnapshotStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Engine records
# ---------------------------------------------------------------------------

@dataclass
class Participant:
    id: str
    identity: str = ""
    display_name: Optional[str] = None
    muted: bool = False
    has_video: bool = False
    video_track_id: Optional[str] = None
    connection_quality: ConnectionQuality = ConnectionQuality.UNKNOWN

    @classmethod
    def from_payload(cls, payload: Any) -> "Participant":
        payload = _require(payload, "participant")
        pid = _pick(payload, "sid", "id")
        if not pid:
            raise ValueError("participant payload has no id")
        return cls(
            id=str(pid),
            identity=str(_pick(payload, "identity", default="")),
            display_name=_pick(payload, "name", "display_name", "displayName"),
            muted=bool(_pick(payload, "is_muted", "muted", "isMuted", default=False)),
            has_video=bool(_pick(payload, "has_video", "hasVideo", default=False)),
            video_track_id=_pick(payload, "video_track_sid", "video_track_id", "videoTrackId"),
            connection_quality=ConnectionQuality.parse(
                _pick(payload, "connection_quality", "connectionQuality", default="unknown")
            ),
        )

    @property
    def label(self) -> str:
        return self.display_name or self.identity or "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["connection_quality"] = self.connection_quality.value
        return d


@dataclass
class ChatMessage:
    id: str
    sender_id: str = ""
    sender_name: Optional[str] = None
    text: str = ""
    timestamp_ms: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "ChatMessage":
        payload = _require(payload, "chat message")
        mid = _pick(payload, "id")
        if not mid:
            raise ValueError("chat message payload has no id")
        return cls(
            id=str(mid),
            sender_id=str(_pick(payload, "sender_sid", "sender_id", "senderId", default="")),
            sender_name=_pick(payload, "sender_name", "senderName"),
            text=str(_pick(payload, "text", default="")),
            timestamp_ms=int(_pick(payload, "timestamp_ms", "timestampMs", default=0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MediaFrame:
    """One decoded-at-the-engine still frame.  `data` is base64 JPEG."""
    track_id: str
    data: str
    width: int = 0
    height: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "MediaFrame":
        payload = _require(payload, "video frame")
        track_id = _pick(payload, "track_sid", "trackId", "track_id")
        if not track_id:
            raise ValueError("video frame payload has no track id")
        return cls(
            track_id=str(track_id),
            data=str(_pick(payload, "data", default="")),
            width=int(_pick(payload, "width", default=0)),
            height=int(_pick(payload, "height", default=0)),
        )


@dataclass
class HandRaiseEvent:
    participant_id: str
    raised: bool
    position: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "HandRaiseEvent":
        payload = _require(payload, "hand raise")
        pid = _pick(payload, "participantSid", "participantId", "participant_sid", "participant_id")
        if not pid:
            raise ValueError("hand raise payload has no participant id")
        raised = bool(_pick(payload, "raised", default=False))
        return cls(
            participant_id=str(pid),
            raised=raised,
            position=int(_pick(payload, "position", default=0)) if raised else 0,
        )


@dataclass
class Settings:
    """Persisted user preferences.  The engine owns storage."""
    display_name: Optional[str] = None
    language: Optional[str] = None
    mic_enabled_on_join: bool = True
    camera_enabled_on_join: bool = False
    theme: str = "light"

    @classmethod
    def from_payload(cls, payload: Any) -> "Settings":
        payload = _require(payload, "settings")
        return cls(
            display_name=_pick(payload, "display_name", "displayName"),
            language=_pick(payload, "language"),
            mic_enabled_on_join=bool(_pick(payload, "mic_enabled_on_join", "micEnabledOnJoin", default=True)),
            camera_enabled_on_join=bool(
                _pick(payload, "camera_enabled_on_join", "cameraEnabledOnJoin", default=False)
            ),
            theme=str(_pick(payload, "theme", default="light")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeviceSelection:
    audio_input: Optional[str] = None
    video_input: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Local wrappers
# ---------------------------------------------------------------------------

@dataclass
class Optimistic(Generic[T]):
    """
    A value applied locally before the engine confirms it.

    `begin()` hands out a token; only the newest token may clear the
    pending value, so an older confirmation can't stomp a newer toggle.
    """
    confirmed: T
    pending: Optional[T] = None
    _seq: int = field(default=0, repr=False)
    _pending_seq: int = field(default=0, repr=False)

    @property
    def value(self) -> T:
        return self.pending if self.pending is not None else self.confirmed

    @property
    def is_pending(self) -> bool:
        return self.pending is not None

    def begin(self, value: T) -> int:
        self._seq += 1
        self._pending_seq = self._seq
        self.pending = value
        return self._seq

    def confirm(self, token: int, value: T) -> None:
        self.confirmed = value
        if token == self._pending_seq:
            self.pending = None

    def rollback(self, token: int) -> None:
        if token == self._pending_seq:
            self.pending = None

    def reset(self, value: T) -> None:
        self.confirmed = value
        self.pending = None
        self._pending_seq = 0


@dataclass
class Snapshot(Generic[T]):
    """Last pulled value of a getter plus how many pulls have failed since."""
    empty: Callable[[], T]
    value: T = None  # type: ignore[assignment]
    misses: int = 0
    stale_cycles: int = sync_cfg.stale_cycles

    def __post_init__(self) -> None:
        if self.value is None:
            self.value = self.empty()

    @property
    def status(self) -> SnapshotStatus:
        if self.misses == 0:
            return SnapshotStatus.FRESH
        if self.misses <= self.stale_cycles:
            return SnapshotStatus.STALE
        return SnapshotStatus.UNKNOWN

    @property
    def current(self) -> T:
        """What the view should present: the value, or empty once unknown."""
        if self.status is SnapshotStatus.UNKNOWN:
            return self.empty()
        return self.value

    def refresh(self, value: T) -> None:
        self.value = value
        self.misses = 0

    def miss(self) -> None:
        self.misses += 1

    def reset(self, value: Optional[T] = None) -> None:
        self.value = value if value is not None else self.empty()
        self.misses = 0


# ---------------------------------------------------------------------------
# View state
# ---------------------------------------------------------------------------

def _disconnected() -> SessionConnectionState:
    return SessionConnectionState.DISCONNECTED


@dataclass
class ViewState:
    """
    Everything the presentation layer reads.  Client-owned: nothing in
    here is pulled as-is, it is mirrored or derived.
    """
    screen: Screen = Screen.HOME
    connection: Snapshot[SessionConnectionState] = field(
        default_factory=lambda: Snapshot(empty=_disconnected)
    )
    participants: Snapshot[Dict[str, Participant]] = field(
        default_factory=lambda: Snapshot(empty=dict)
    )
    messages: Snapshot[List[ChatMessage]] = field(
        default_factory=lambda: Snapshot(empty=list)
    )
    chat_open: bool = False
    unread_count: int = 0
    device_selection: DeviceSelection = field(default_factory=DeviceSelection)
    picker: PickerState = PickerState.NONE
    mic_enabled: Optimistic[bool] = field(default_factory=lambda: Optimistic(confirmed=False))
    camera_enabled: Optimistic[bool] = field(default_factory=lambda: Optimistic(confirmed=False))
    hand_raised: bool = False
    hand_raise_map: Dict[str, int] = field(default_factory=dict)
    degraded: bool = False
    notice: Optional[str] = None

    @property
    def connection_state(self) -> Optional[SessionConnectionState]:
        """None while the connection snapshot is unknown."""
        if self.connection.status is SnapshotStatus.UNKNOWN:
            return None
        return self.connection.value

    def reset_session(self) -> None:
        """Drop every session-scoped value.  Screen and device selection survive."""
        self.connection.reset(SessionConnectionState.DISCONNECTED)
        self.participants.reset()
        self.messages.reset()
        self.chat_open = False
        self.unread_count = 0
        self.picker = PickerState.NONE
        self.mic_enabled.reset(False)
        self.camera_enabled.reset(False)
        self.hand_raised = False
        self.hand_raise_map.clear()
        self.degraded = False

    def to_dict(self) -> Dict[str, Any]:
        state = self.connection_state
        return {
            "screen": self.screen.value,
            "connection_state": state.value if state else "unknown",
            "participants": [p.to_dict() for p in self.participants.current.values()],
            "participants_status": self.participants.status.value,
            "messages": [m.to_dict() for m in self.messages.current],
            "messages_status": self.messages.status.value,
            "chat_open": self.chat_open,
            "unread_count": self.unread_count,
            "device_selection": self.device_selection.to_dict(),
            "picker": self.picker.value,
            "mic_enabled": self.mic_enabled.value,
            "mic_pending": self.mic_enabled.is_pending,
            "camera_enabled": self.camera_enabled.value,
            "camera_pending": self.camera_enabled.is_pending,
            "hand_raised": self.hand_raised,
            "hand_raise_map": dict(self.hand_raise_map),
            "degraded": self.degraded,
            "notice": self.notice,
        }
