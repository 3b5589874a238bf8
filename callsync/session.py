"""
CallSync — Call Session

================================================================================
ONE CALL AT A TIME — THE SUPERVISOR
================================================================================

`CallSession` is the only thing user intents talk to.  It owns:
  • One command gateway (request/response into the engine)
  • One event bus (push subscriptions, alive only while in a call)
  • One reconciliation loop (fixed-interval snapshot pulls, same lifetime)
  • The session store (single writer, epoch-stamped mailbox)

Lifecycle:
  join()   → set_display_name → connect → EnterCall → subscribe → poll
             (subscribe or poll start failing tears the call straight down)
  hang_up() / engine says disconnected
           → stop poll → unsubscribe → advance epoch → ResetSession

Mutating commands are optimistic where the user expects instant feedback
(mic, camera, chat panel): the local value changes first, then rolls back
if the engine refuses.  Every refusal also lands in `view.notice` and is
re-raised to whoever asked.
================================================================================
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from .core.config import sync_cfg
from .core.errors import CommandError, StaleUpdateError
from .core.interfaces import Engine
from .core.models import FocusTarget, PickerState, Settings, ViewState
from .core.store import SessionStore
from .core.updates import (
    BeginToggle,
    EnterCall,
    Focus,
    ResetSession,
    ResolveToggle,
    RestoreChat,
    SelectDevice,
    SetChatOpen,
    SetHandRaised,
    SetNotice,
    TogglePicker,
    Update,
)
from .services.event_bus import EventSubscriptionBus
from .services.gateway import SessionCommandGateway
from .services.reconciler import ReconciliationLoop

logger = logging.getLogger("callsync.session")


class CallSession:
    """
    Usage:
        session = CallSession(engine)
        await session.join("meet.example.com/abc-defg-hij", "Alice")
        await session.toggle_mic()
        await session.hang_up()
    """

    def __init__(
        self,
        engine: Engine,
        store: Optional[SessionStore] = None,
        poll_interval: float = sync_cfg.poll_interval,
    ) -> None:
        self.store = store if store is not None else SessionStore()
        self.gateway = SessionCommandGateway(engine)
        self.bus = EventSubscriptionBus(engine, self.store, self.gateway)
        self.reconciler = ReconciliationLoop(
            self.gateway,
            self.store,
            on_disconnected=self._on_engine_disconnected,
            interval=poll_interval,
        )
        self.settings = Settings()
        self._joining = False
        self._hang_up_requested = False

    # ── Read side ───────────────────────────────────────────────────────

    @property
    def view(self) -> ViewState:
        return self.store.view

    @property
    def in_call(self) -> bool:
        return self.store.machine.in_call

    def snapshot(self) -> Dict[str, Any]:
        """Renderer-facing copy of the view.  Never blocks, never writes."""
        data = self.store.view.to_dict()
        data["tracks"] = self.store.frames.track_ids()
        return data

    # ── Call lifecycle ──────────────────────────────────────────────────

    async def join(self, url: str, display_name: Optional[str] = None) -> None:
        if self.in_call or self._joining:
            raise CommandError("connect", "already in a call")

        self._joining = True
        self._hang_up_requested = False
        try:
            name = (display_name or "").strip() or self.settings.display_name
            if name:
                try:
                    await self.gateway.set_display_name(name)
                    self.settings.display_name = name
                except CommandError as e:
                    logger.warning(f"Could not persist display name: {e}")

            if self._hang_up_requested:
                logger.info("Hung up before connecting — join abandoned")
                return

            try:
                await self.gateway.connect(url, name)
            except CommandError as e:
                await self._report(e)
                raise

            if self._hang_up_requested:
                logger.info("Hung up while connecting — leaving instead of entering the call")
                await self._leave("hang up")
                return

            epoch = self.store.advance_epoch()
            await self.store.submit(EnterCall(reason="connect accepted"), epoch)
            if self._hang_up_requested:
                await self._leave("hang up")
                return
            if self.store.epoch != epoch:
                logger.info(f"[epoch {epoch}] Call ended before subscribing")
                return

            try:
                await self.bus.subscribe_all(epoch)
                if self.store.epoch != epoch:
                    logger.info(f"[epoch {epoch}] Call ended while subscribing")
                    self.bus.unsubscribe_all()
                    return
                self.reconciler.start(epoch)
            except Exception as e:
                logger.error(f"[epoch {epoch}] Could not start call sync: {e}", exc_info=True)
                await self._end_call("subscribe failed")
                error = CommandError("connect", f"could not subscribe to call events: {e}", cause=e)
                await self._report(error)
                raise error from e
        finally:
            self._joining = False
            self._hang_up_requested = False

        await self._apply_join_preferences()

    async def _apply_join_preferences(self) -> None:
        wanted = {
            "mic": self.settings.mic_enabled_on_join,
            "camera": self.settings.camera_enabled_on_join,
        }
        for device, enabled in wanted.items():
            if not enabled:
                continue
            try:
                await self._set_device(device, True)
            except CommandError as e:
                logger.warning(f"Could not enable {device} on join: {e}")

    async def hang_up(self) -> None:
        """
        Always ends on the home screen, whatever `disconnect` says.
        During a join that has not reached the call screen yet, the
        request is recorded and `join` leaves as soon as `connect` returns.
        """
        if not self.in_call:
            if self._joining:
                logger.info("Hang up requested while joining")
                self._hang_up_requested = True
                return
            logger.debug("Hang up ignored — not in a call")
            return
        await self._leave("hang up")

    async def _leave(self, reason: str) -> None:
        try:
            await self.gateway.disconnect()
        except CommandError as e:
            logger.warning(f"Disconnect failed ({e.message}) — leaving call view anyway")
        await self._end_call(reason)

    async def _on_engine_disconnected(self, reason: str) -> None:
        await self._end_call(reason)

    async def _end_call(self, reason: str) -> None:
        if not (self.in_call or self.reconciler.polling or self.bus.active):
            return
        # Order matters: nothing may produce for the old call once the epoch moves
        self.reconciler.stop()
        self.bus.unsubscribe_all()
        epoch = self.store.advance_epoch()
        try:
            await self.store.submit(ResetSession(reason=reason), epoch)
        except StaleUpdateError as e:
            # a concurrent teardown advanced the epoch again and reset for us
            logger.debug(f"Teardown ({reason}) superseded: {e}")

    async def close(self) -> None:
        if self.in_call:
            await self.hang_up()

    # ── Devices ─────────────────────────────────────────────────────────

    async def toggle_mic(self) -> bool:
        return await self._set_device("mic", None)

    async def toggle_camera(self) -> bool:
        return await self._set_device("camera", None)

    async def _set_device(self, device: str, enabled: Optional[bool]) -> bool:
        command = f"toggle_{device}"
        epoch = self._require_call(command)
        token, value = await self._submit(command, BeginToggle(device, enabled), epoch)

        send = self.gateway.toggle_mic if device == "mic" else self.gateway.toggle_camera
        try:
            await send(value)
        except CommandError as e:
            self.store.post(ResolveToggle(device, token, value, ok=False), epoch)
            await self._report(e)
            raise
        self.store.post(ResolveToggle(device, token, value, ok=True), epoch)
        return value

    # ── Hand raise ──────────────────────────────────────────────────────

    async def toggle_hand(self) -> bool:
        epoch = self._require_call("toggle_hand")
        raised = self.view.hand_raised
        try:
            if raised:
                await self.gateway.lower_hand()
            else:
                await self.gateway.raise_hand()
        except CommandError as e:
            await self._report(e)
            raise
        self.store.post(SetHandRaised(not raised), epoch)
        return not raised

    # ── Chat ────────────────────────────────────────────────────────────

    async def set_chat_open(self, open: bool) -> None:
        epoch = self._require_call("set_chat_open")
        prior_open, prior_unread = await self._submit("set_chat_open", SetChatOpen(open), epoch)
        try:
            await self.gateway.set_chat_open(open)
        except CommandError as e:
            self.store.post(RestoreChat(prior_open, prior_unread), epoch)
            await self._report(e)
            raise

    async def toggle_chat(self) -> bool:
        target = not self.view.chat_open
        await self.set_chat_open(target)
        return target

    async def send_chat(self, text: str) -> None:
        self._require_call("send_chat")
        try:
            await self.gateway.send_chat(text)
        except CommandError as e:
            await self._report(e)
            raise

    # ── Pickers and device selection (local only) ──────────────────────

    async def toggle_picker(self, kind: PickerState) -> PickerState:
        return await self.store.submit(TogglePicker(kind))

    async def focus(self, target: FocusTarget) -> PickerState:
        return await self.store.submit(Focus(target))

    async def select_audio_input(self, device_id: Optional[str]) -> None:
        await self.store.submit(SelectDevice("audio_input", device_id))

    async def select_video_input(self, device_id: Optional[str]) -> None:
        await self.store.submit(SelectDevice("video_input", device_id))

    async def dismiss_notice(self) -> None:
        await self.store.submit(SetNotice(None))

    # ── Settings ────────────────────────────────────────────────────────

    async def load_settings(self) -> Settings:
        try:
            self.settings = await self.gateway.get_settings()
        except CommandError as e:
            logger.warning(f"Could not load settings, using defaults: {e}")
        return self.settings

    async def save_settings(self, changes: Dict[str, Any]) -> Settings:
        """Persist only the fields present in `changes`.  Unknown keys are rejected."""
        setters: Dict[str, Callable[[Any], Any]] = {
            "display_name": self.gateway.set_display_name,
            "language": self.gateway.set_language,
            "theme": self.gateway.set_theme,
            "mic_enabled_on_join": self.gateway.set_mic_enabled_on_join,
            "camera_enabled_on_join": self.gateway.set_camera_enabled_on_join,
        }
        unknown = set(changes) - set(setters)
        if unknown:
            raise CommandError("save_settings", f"unknown settings: {', '.join(sorted(unknown))}")

        for key, value in changes.items():
            try:
                await setters[key](value)
            except CommandError as e:
                await self._report(e)
                raise
            setattr(self.settings, key, value)
        logger.info(f"Settings saved: {sorted(changes)}")
        return self.settings

    # ── Helpers ─────────────────────────────────────────────────────────

    def _require_call(self, command: str) -> int:
        if not self.in_call:
            raise CommandError(command, "not in a call")
        return self.store.epoch

    async def _submit(self, command: str, update: Update, epoch: int) -> Any:
        try:
            return await self.store.submit(update, epoch)
        except StaleUpdateError as e:
            raise CommandError(command, "call ended", cause=e) from e

    async def _report(self, error: CommandError) -> None:
        logger.warning(f"Command failed — {error}")
        await self.store.submit(SetNotice(str(error)))
