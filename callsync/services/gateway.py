"""
CallSync — Session Command Gateway

Typed request/response calls into the engine.  Each method is exactly one
`invoke`; it either returns a typed result or raises CommandError.  Only
the getters may be assumed idempotent.

The gateway never touches local state.  Rolling back optimistic values
is the caller's job.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional, TypeVar

from ..core.errors import CommandError, PayloadError
from ..core.interfaces import CommandChannel
from ..core.models import ChatMessage, Participant, SessionConnectionState, Settings

logger = logging.getLogger("callsync.gateway")

T = TypeVar("T")


class SessionCommandGateway:
    """
    Usage:
        gateway = SessionCommandGateway(engine)
        await gateway.connect("meet.example.com/abc-defg-hij", "Alice")
        state = await gateway.get_connection_state()
    """

    def __init__(self, channel: CommandChannel) -> None:
        self._channel = channel
        self.calls = 0
        self.failures = 0

    # ── Core invoke ─────────────────────────────────────────────────────

    async def _invoke(self, command: str, **args: Any) -> Any:
        self.calls += 1
        t0 = time.perf_counter()
        try:
            result = await self._channel.invoke(command, **args)
        except CommandError:
            self.failures += 1
            raise
        except Exception as e:
            self.failures += 1
            logger.debug(f"{command} failed: {e}")
            raise CommandError(command, str(e) or type(e).__name__, cause=e) from e
        elapsed_ms = (time.perf_counter() - t0) * 1000
        logger.debug(f"{command} ok ({elapsed_ms:.1f}ms)")
        return result

    async def _get(self, command: str, parse: Callable[[Any], T]) -> T:
        raw = await self._invoke(command)
        try:
            return parse(raw)
        except (TypeError, ValueError) as e:
            self.failures += 1
            raise PayloadError(command, f"unexpected payload: {e}", cause=e) from e

    # ── Session ─────────────────────────────────────────────────────────

    async def connect(self, url: str, display_name: Optional[str] = None) -> None:
        url = (url or "").strip()
        if not url:
            raise CommandError("connect", "Please enter a meeting URL")
        name = (display_name or "").strip() or None
        logger.info(f"Connecting to {url}" + (f" as {name}" if name else ""))
        await self._invoke("connect", meet_url=url, username=name)

    async def disconnect(self) -> None:
        await self._invoke("disconnect")

    # ── Devices ─────────────────────────────────────────────────────────

    async def toggle_mic(self, enabled: bool) -> None:
        await self._invoke("toggle_mic", enabled=bool(enabled))

    async def toggle_camera(self, enabled: bool) -> None:
        await self._invoke("toggle_camera", enabled=bool(enabled))

    # ── Hand raise ──────────────────────────────────────────────────────

    async def raise_hand(self) -> None:
        await self._invoke("raise_hand")

    async def lower_hand(self) -> None:
        await self._invoke("lower_hand")

    async def is_hand_raised(self) -> bool:
        return await self._get("is_hand_raised", _parse_bool)

    # ── Chat ────────────────────────────────────────────────────────────

    async def send_chat(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            raise CommandError("send_chat", "message is empty")
        await self._invoke("send_chat", text=text)

    async def set_chat_open(self, open: bool) -> None:
        await self._invoke("set_chat_open", open=bool(open))

    # ── Snapshots ───────────────────────────────────────────────────────

    async def get_connection_state(self) -> SessionConnectionState:
        return await self._get("get_connection_state", SessionConnectionState.parse)

    async def get_participants(self) -> List[Participant]:
        return await self._get("get_participants", _parse_list(Participant.from_payload))

    async def get_messages(self) -> List[ChatMessage]:
        return await self._get("get_messages", _parse_list(ChatMessage.from_payload))

    # ── Settings ────────────────────────────────────────────────────────

    async def get_settings(self) -> Settings:
        return await self._get("get_settings", Settings.from_payload)

    async def set_display_name(self, name: Optional[str]) -> None:
        await self._invoke("set_display_name", name=(name or "").strip() or None)

    async def set_language(self, lang: Optional[str]) -> None:
        await self._invoke("set_language", lang=lang)

    async def set_theme(self, theme: str) -> None:
        await self._invoke("set_theme", theme=theme)

    async def set_mic_enabled_on_join(self, enabled: bool) -> None:
        await self._invoke("set_mic_enabled_on_join", enabled=bool(enabled))

    async def set_camera_enabled_on_join(self, enabled: bool) -> None:
        await self._invoke("set_camera_enabled_on_join", enabled=bool(enabled))


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    raise ValueError(f"expected bool, got {type(raw).__name__}")


def _parse_list(item: Callable[[Any], T]) -> Callable[[Any], List[T]]:
    def parse(raw: Any) -> List[T]:
        if not isinstance(raw, (list, tuple)):
            raise ValueError(f"expected list, got {type(raw).__name__}")
        return [item(entry) for entry in raw]
    return parse
