"""
CallSync — Event Subscription Bus

Holds the engine push subscriptions for exactly as long as the call view
is up.  Each handler turns a raw payload into a typed update and posts it
to the session store, stamped with the epoch of the call it was
subscribed for.  Handlers do no writing of their own.

Streams:
  video-frame          → UpsertFrame        (latest-wins per track)
  hand-raised-changed  → HandRaiseChanged   (+ re-query own hand on "lowered")
  unread-count-changed → SetUnreadCount     (push is authoritative)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.errors import CommandError
from ..core.interfaces import EventChannel, Unlisten
from ..core.models import HandRaiseEvent, MediaFrame
from ..core.store import SessionStore
from ..core.updates import HandRaiseChanged, SetHandRaised, SetUnreadCount, UpsertFrame
from .gateway import SessionCommandGateway

logger = logging.getLogger("callsync.bus")

VIDEO_FRAME = "video-frame"
HAND_RAISED_CHANGED = "hand-raised-changed"
UNREAD_COUNT_CHANGED = "unread-count-changed"

STREAMS = (VIDEO_FRAME, HAND_RAISED_CHANGED, UNREAD_COUNT_CHANGED)


class EventSubscriptionBus:
    """
    Lifecycle:
        bus = EventSubscriptionBus(engine, store, gateway)
        await bus.subscribe_all(epoch)   # on home → call
        bus.unsubscribe_all()            # on call → home, synchronous
    """

    def __init__(
        self,
        channel: EventChannel,
        store: SessionStore,
        gateway: SessionCommandGateway,
    ) -> None:
        self._channel = channel
        self._store = store
        self._gateway = gateway

        self._epoch: Optional[int] = None
        self._unlisteners: List[Unlisten] = []
        self._tasks: Set[asyncio.Task] = set()
        self.received: Counter = Counter()
        self.dropped: Counter = Counter()

    @property
    def active(self) -> bool:
        return self._epoch is not None

    @property
    def subscription_count(self) -> int:
        return len(self._unlisteners)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def subscribe_all(self, epoch: int) -> None:
        if self._epoch == epoch:
            return
        if self.active:
            self.unsubscribe_all()
        self._epoch = epoch

        handlers: Dict[str, Callable[[int, Any], None]] = {
            VIDEO_FRAME: self._on_video_frame,
            HAND_RAISED_CHANGED: self._on_hand_raised,
            UNREAD_COUNT_CHANGED: self._on_unread_count,
        }
        for stream, handler in handlers.items():
            unlisten = await self._channel.listen(stream, functools.partial(handler, epoch))
            if self._epoch != epoch:
                # torn down while we were registering
                _safe_unlisten(stream, unlisten)
                return
            self._unlisteners.append(unlisten)

        logger.info(f"[epoch {epoch}] Subscribed to {len(self._unlisteners)} streams")

    def unsubscribe_all(self) -> None:
        """Drop every handler and cancel pending re-queries.  Never awaits."""
        epoch = self._epoch
        self._epoch = None

        unlisteners, self._unlisteners = self._unlisteners, []
        for unlisten in unlisteners:
            _safe_unlisten("stream", unlisten)

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if epoch is not None:
            logger.info(f"[epoch {epoch}] Unsubscribed from {len(unlisteners)} streams")

    # ── Handlers ────────────────────────────────────────────────────────

    def _live(self, epoch: int, stream: str) -> bool:
        if epoch != self._epoch:
            self.dropped[stream] += 1
            return False
        self.received[stream] += 1
        return True

    def _on_video_frame(self, epoch: int, payload: Any) -> None:
        if not self._live(epoch, VIDEO_FRAME):
            return
        try:
            frame = MediaFrame.from_payload(payload)
        except (TypeError, ValueError) as e:
            logger.warning(f"[epoch {epoch}] Bad {VIDEO_FRAME} payload: {e}")
            return
        self._store.post(UpsertFrame(frame), epoch)

    def _on_hand_raised(self, epoch: int, payload: Any) -> None:
        if not self._live(epoch, HAND_RAISED_CHANGED):
            return
        try:
            event = HandRaiseEvent.from_payload(payload)
        except (TypeError, ValueError) as e:
            logger.warning(f"[epoch {epoch}] Bad {HAND_RAISED_CHANGED} payload: {e}")
            return
        self._store.post(HandRaiseChanged(event), epoch)

        if not event.raised:
            # the engine may have lowered our own hand without us asking
            task = asyncio.get_running_loop().create_task(
                self._reconcile_own_hand(epoch), name=f"hand-requery-{epoch}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _on_unread_count(self, epoch: int, payload: Any) -> None:
        if not self._live(epoch, UNREAD_COUNT_CHANGED):
            return
        try:
            count = int(payload)
        except (TypeError, ValueError):
            logger.warning(f"[epoch {epoch}] Bad {UNREAD_COUNT_CHANGED} payload: {payload!r}")
            return
        self._store.post(SetUnreadCount(count), epoch)

    async def _reconcile_own_hand(self, epoch: int) -> None:
        try:
            raised = await self._gateway.is_hand_raised()
        except CommandError as e:
            logger.warning(f"[epoch {epoch}] Hand state re-query failed: {e}")
            return
        if epoch != self._epoch:
            return
        self._store.post(SetHandRaised(raised), epoch)


def _safe_unlisten(stream: str, unlisten: Unlisten) -> None:
    try:
        unlisten()
    except Exception as e:
        logger.error(f"Unlisten for {stream} failed: {e}")
