"""
CallSync — Demo Engine

In-process stand-in for a real session engine, for when there is no room
server to talk to.  Implements both engine channels so the whole client
(gateway, bus, reconciler, control API) runs end to end:

  • invoke()  — the command set, backed by plain in-memory state
  • listen()  — the three push streams, fed by two background workers:
      _frame_worker     → synthetic JPEG stills per video track
      _activity_worker  → remote chat lines, unread counts, hand raises

`drop_connection()` simulates the engine losing the room, which the
client must only notice through its next poll.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
import uuid
import zlib
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, List, Optional

import cv2
import numpy as np

from ..core.config import DemoConfig, demo_cfg
from ..core.interfaces import EventHandler, Unlisten
from ..core.models import SessionConnectionState, Settings
from .event_bus import HAND_RAISED_CHANGED, UNREAD_COUNT_CHANGED, VIDEO_FRAME
from .frame_cache import LOCAL_CAMERA_TRACK

logger = logging.getLogger("callsync.demo")

LOCAL_SID = "local"

_REMOTES = (
    ("PA_demo_ada", "ada", "Ada Lovelace"),
    ("PA_demo_alan", "alan", "Alan Turing"),
)

_CHATTER = (
    "Can everyone hear me?",
    "Sharing the doc in a sec",
    "Sounds good to me",
    "Let's take that offline",
    "One more thing before we wrap up",
)


# ---------------------------------------------------------------------------
# Synthetic video
# ---------------------------------------------------------------------------

def render_frame(label: str, t: float, width: int, height: int, quality: int) -> str:
    """Draw a moving test card for `label` and return it as base64 JPEG."""
    seed = zlib.crc32(label.encode("utf-8"))
    base = np.array([seed & 0xFF, (seed >> 8) & 0xFF, (seed >> 16) & 0xFF], dtype=np.float32)

    ramp = np.linspace(0.35, 1.0, width, dtype=np.float32)
    img = (ramp[None, :, None] * base[None, None, :]).repeat(height, axis=0).astype(np.uint8)

    cx = int((0.5 + 0.35 * np.sin(t)) * width)
    cv2.circle(img, (cx, height // 2), max(4, height // 6), (255, 255, 255), -1, cv2.LINE_AA)
    cv2.putText(
        img, label, (8, height - 12), cv2.FONT_HERSHEY_SIMPLEX, 0.5,
        (255, 255, 255), 1, cv2.LINE_AA,
    )

    ok, buf = cv2.imencode(".jpg", img, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise RuntimeError("JPEG encode failed")
    return base64.b64encode(buf.tobytes()).decode("ascii")


# ---------------------------------------------------------------------------
# Demo engine
# ---------------------------------------------------------------------------

class DemoEngine:
    """
    Usage:
        engine = DemoEngine()
        session = CallSession(engine)
        await session.join("demo", "Alice")
        ...
        await engine.close()
    """

    def __init__(self, cfg: DemoConfig = demo_cfg, seed: Optional[int] = None) -> None:
        self._cfg = cfg
        self._rng = np.random.default_rng(seed)
        self._listeners: Dict[str, List[EventHandler]] = defaultdict(list)

        self._settings = Settings()
        self._state = SessionConnectionState.DISCONNECTED
        self._meet_url: Optional[str] = None
        self._participants: Dict[str, Dict[str, Any]] = {}
        self._messages: List[Dict[str, Any]] = []
        self._hand_queue: List[str] = []
        self._mic = False
        self._camera = False
        self._chat_open = False
        self._unread = 0

        self._active = False
        self._tasks: List[asyncio.Task] = []
        self.commands: Counter = Counter()
        self.frames_emitted = 0

    @property
    def state(self) -> SessionConnectionState:
        return self._state

    # ── Channels ────────────────────────────────────────────────────────

    async def invoke(self, command: str, **args: Any) -> Any:
        handler: Optional[Callable[..., Any]] = getattr(self, f"_cmd_{command}", None)
        if handler is None:
            raise ValueError(f"unknown command: {command}")
        self.commands[command] += 1
        result = handler(**args)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def listen(self, event: str, handler: EventHandler) -> Unlisten:
        self._listeners[event].append(handler)

        def _unlisten() -> None:
            if handler in self._listeners[event]:
                self._listeners[event].remove(handler)

        return _unlisten

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(h) for h in self._listeners.values())

    async def emit(self, event: str, payload: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            try:
                cb = handler(payload)
                if asyncio.iscoroutine(cb):
                    await cb
            except Exception as e:
                logger.error(f"Listener for {event} raised: {e}")

    # ── Session commands ────────────────────────────────────────────────

    def _cmd_connect(self, meet_url: str, username: Optional[str] = None) -> None:
        if self._state is not SessionConnectionState.DISCONNECTED:
            raise RuntimeError("already connected")
        self._meet_url = meet_url
        name = username or self._settings.display_name or "You"

        self._participants = {
            LOCAL_SID: self._participant(LOCAL_SID, "me", name, video_track=None),
        }
        for sid, identity, display_name in _REMOTES:
            self._participants[sid] = self._participant(
                sid, identity, display_name, video_track=f"TR_{identity}"
            )
        self._messages = []
        self._hand_queue = []
        self._mic = self._camera = self._chat_open = False
        self._unread = 0
        self._state = SessionConnectionState.CONNECTED

        self._active = True
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._frame_worker(), name="demo-frames"),
            loop.create_task(self._activity_worker(), name="demo-activity"),
        ]
        logger.info(f"Demo engine connected to {meet_url} as {name}")

    async def _cmd_disconnect(self) -> None:
        await self._stop_workers()
        self._state = SessionConnectionState.DISCONNECTED
        self._participants.clear()
        self._hand_queue.clear()
        logger.info("Demo engine disconnected")

    def _cmd_get_connection_state(self) -> str:
        return self._state.value

    def _cmd_get_participants(self) -> List[Dict[str, Any]]:
        return [dict(p) for p in self._participants.values()]

    def _cmd_get_messages(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self._messages]

    # ── Devices ─────────────────────────────────────────────────────────

    def _cmd_toggle_mic(self, enabled: bool) -> None:
        self._require_connected()
        self._mic = bool(enabled)
        self._participants[LOCAL_SID]["is_muted"] = not self._mic

    def _cmd_toggle_camera(self, enabled: bool) -> None:
        self._require_connected()
        self._camera = bool(enabled)
        local = self._participants[LOCAL_SID]
        local["has_video"] = self._camera
        local["video_track_sid"] = LOCAL_CAMERA_TRACK if self._camera else None

    # ── Hand raise ──────────────────────────────────────────────────────

    async def _cmd_raise_hand(self) -> None:
        self._require_connected()
        await self._raise(LOCAL_SID)

    async def _cmd_lower_hand(self) -> None:
        self._require_connected()
        await self._lower(LOCAL_SID)

    def _cmd_is_hand_raised(self) -> bool:
        return LOCAL_SID in self._hand_queue

    async def _raise(self, sid: str) -> None:
        if sid in self._hand_queue:
            return
        self._hand_queue.append(sid)
        await self.emit(HAND_RAISED_CHANGED, {
            "participantSid": sid, "raised": True, "position": len(self._hand_queue),
        })

    async def _lower(self, sid: str) -> None:
        if sid not in self._hand_queue:
            return
        self._hand_queue.remove(sid)
        await self.emit(HAND_RAISED_CHANGED, {"participantSid": sid, "raised": False, "position": 0})
        # everyone behind moves up one
        for position, other in enumerate(self._hand_queue, start=1):
            await self.emit(HAND_RAISED_CHANGED, {
                "participantSid": other, "raised": True, "position": position,
            })

    # ── Chat ────────────────────────────────────────────────────────────

    def _cmd_send_chat(self, text: str) -> None:
        self._require_connected()
        local = self._participants[LOCAL_SID]
        self._append_message(LOCAL_SID, local["name"], text)

    async def _cmd_set_chat_open(self, open: bool) -> None:
        self._chat_open = bool(open)
        if self._chat_open and self._unread:
            self._unread = 0
            await self.emit(UNREAD_COUNT_CHANGED, 0)

    def _append_message(self, sid: str, name: Optional[str], text: str) -> None:
        self._messages.append({
            "id": uuid.uuid4().hex[:12],
            "sender_sid": sid,
            "sender_name": name,
            "text": text,
            "timestamp_ms": int(time.time() * 1000),
        })

    # ── Settings ────────────────────────────────────────────────────────

    def _cmd_get_settings(self) -> Dict[str, Any]:
        return self._settings.to_dict()

    def _cmd_set_display_name(self, name: Optional[str]) -> None:
        self._settings.display_name = name

    def _cmd_set_language(self, lang: Optional[str]) -> None:
        self._settings.language = lang

    def _cmd_set_theme(self, theme: str) -> None:
        self._settings.theme = theme

    def _cmd_set_mic_enabled_on_join(self, enabled: bool) -> None:
        self._settings.mic_enabled_on_join = bool(enabled)

    def _cmd_set_camera_enabled_on_join(self, enabled: bool) -> None:
        self._settings.camera_enabled_on_join = bool(enabled)

    # ── Simulation controls ─────────────────────────────────────────────

    async def drop_connection(self) -> None:
        """The room went away.  Subscribers are not told; only polls see it."""
        await self._stop_workers()
        self._state = SessionConnectionState.DISCONNECTED
        logger.info("Demo engine dropped the connection")

    async def close(self) -> None:
        await self._stop_workers()
        self._listeners.clear()

    async def _stop_workers(self) -> None:
        self._active = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if task is asyncio.current_task() or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Workers ─────────────────────────────────────────────────────────

    async def _frame_worker(self) -> None:
        """Emits one frame per live video track every `frame_interval` seconds."""
        cfg = self._cfg
        while self._active:
            try:
                t = time.time()
                for sid, p in list(self._participants.items()):
                    track = p.get("video_track_sid")
                    if not track or not p.get("has_video"):
                        continue
                    data = render_frame(
                        p["name"] or sid, t, cfg.frame_width, cfg.frame_height, cfg.jpeg_quality
                    )
                    await self.emit(VIDEO_FRAME, {
                        "track_sid": track,
                        "data": data,
                        "width": cfg.frame_width,
                        "height": cfg.frame_height,
                    })
                    self.frames_emitted += 1
                await asyncio.sleep(cfg.frame_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Demo frame worker error: {e}", exc_info=True)
                await asyncio.sleep(cfg.frame_interval)

    async def _activity_worker(self) -> None:
        """Remote participants chat and raise/lower hands now and then."""
        remotes = [sid for sid, _, _ in _REMOTES]
        while self._active:
            try:
                await asyncio.sleep(self._cfg.activity_interval)
                if not self._active:
                    break

                sid = remotes[int(self._rng.integers(len(remotes)))]
                roll = float(self._rng.random())
                if roll < 0.6:
                    text = _CHATTER[int(self._rng.integers(len(_CHATTER)))]
                    self._append_message(sid, self._participants[sid]["name"], text)
                    if not self._chat_open:
                        self._unread += 1
                        await self.emit(UNREAD_COUNT_CHANGED, self._unread)
                elif sid in self._hand_queue:
                    await self._lower(sid)
                else:
                    await self._raise(sid)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"Demo activity error: {e}")

    # ── Helpers ─────────────────────────────────────────────────────────

    def _require_connected(self) -> None:
        if self._state is SessionConnectionState.DISCONNECTED:
            raise RuntimeError("not connected")

    def _participant(
        self, sid: str, identity: str, name: str, video_track: Optional[str]
    ) -> Dict[str, Any]:
        return {
            "sid": sid,
            "identity": identity,
            "name": name,
            "is_muted": sid == LOCAL_SID,
            "has_video": video_track is not None,
            "video_track_sid": video_track,
            "connection_quality": "good" if sid == LOCAL_SID else "excellent",
        }
