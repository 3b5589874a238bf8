"""
CallSync — Session Store

================================================================================
ONE MAILBOX, ONE WRITER
================================================================================

The reconciliation loop, the event bus and user commands all write the
same view.  None of them touch it directly: each builds an `Update` and
hands it to this store, which applies them one at a time, in arrival
order, on a single writer task.

Every update is stamped with the epoch of the call that produced it.
Tearing a call down advances the epoch, so anything still in flight from
the old call (a late event, a getter that resolved after hang-up) is
discarded by the writer instead of leaking into the next call.

Flow:
  producer → post()/submit() → asyncio.Queue → _writer() → update.apply(store)
                                                              ↓
                                                 observers(view, update)
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..services.frame_cache import MediaFrameCache
from .errors import StaleUpdateError
from .models import ViewState
from .state_machine import ViewStateMachine
from .updates import Update, describe

logger = logging.getLogger("callsync.store")

Observer = Callable[[ViewState, Update], None]


@dataclass
class _Envelope:
    update: Update
    epoch: Optional[int]
    future: Optional[asyncio.Future] = None


class SessionStore:
    """
    Owns the view state, the frame cache and the screen state machine.
    Only the writer task mutates them.
    """

    def __init__(self, frames: Optional[MediaFrameCache] = None) -> None:
        self.view = ViewState()
        self.frames = frames if frames is not None else MediaFrameCache()
        self.machine = ViewStateMachine()

        self._queue: "asyncio.Queue[_Envelope]" = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._observers: List[Observer] = []
        self._epoch = 0
        self._closed = False

        self.applied = 0
        self.discarded = 0

    # ── Epochs ──────────────────────────────────────────────────────────

    @property
    def epoch(self) -> int:
        return self._epoch

    def advance_epoch(self) -> int:
        """Invalidate everything stamped with an older epoch.  Synchronous."""
        self._epoch += 1
        logger.debug(f"Epoch advanced to {self._epoch}")
        return self._epoch

    # ── Observers ───────────────────────────────────────────────────────

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    # ── Producers ───────────────────────────────────────────────────────

    def post(self, update: Update, epoch: Optional[int] = None) -> None:
        """Fire-and-forget.  Safe to call from synchronous event handlers."""
        if self._closed:
            logger.debug(f"Store closed — dropping {update.name}")
            return
        self._ensure_writer()
        self._queue.put_nowait(_Envelope(update=update, epoch=epoch))

    async def submit(self, update: Update, epoch: Optional[int] = None) -> Any:
        """
        Enqueue and wait until applied.  Returns whatever `apply` returned.
        Raises StaleUpdateError if the epoch moved on before it ran.
        """
        if self._closed:
            raise RuntimeError("session store is closed")
        self._ensure_writer()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Envelope(update=update, epoch=epoch, future=future))
        return await future

    async def drain(self) -> None:
        """Wait until every queued update has been applied or discarded."""
        if self._writer_task is None:
            return
        await self._queue.join()

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        self._closed = False
        self._ensure_writer()

    async def close(self) -> None:
        self._closed = True
        task = self._writer_task
        self._writer_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # Anyone still awaiting a submit gets told rather than hanging
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            self._queue.task_done()
            if envelope.future and not envelope.future.done():
                envelope.future.set_exception(RuntimeError("session store is closed"))

    def _ensure_writer(self) -> None:
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = asyncio.get_running_loop().create_task(
                self._writer(), name="callsync-store-writer"
            )

    # ── Writer ──────────────────────────────────────────────────────────

    async def _writer(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                self._apply(envelope)
            finally:
                self._queue.task_done()

    def _apply(self, envelope: _Envelope) -> None:
        update, future = envelope.update, envelope.future

        if envelope.epoch is not None and envelope.epoch != self._epoch:
            self.discarded += 1
            logger.debug(
                f"Discarding {describe(update)} from epoch {envelope.epoch} "
                f"(current {self._epoch})"
            )
            if future and not future.done():
                future.set_exception(
                    StaleUpdateError(update.name, envelope.epoch, self._epoch)
                )
            return

        try:
            result = update.apply(self)
        except Exception as e:
            logger.error(f"Update {update.name} failed: {e}", exc_info=True)
            if future and not future.done():
                future.set_exception(e)
            return

        self.applied += 1
        if future and not future.done():
            future.set_result(result)
        self._notify(update)

    def _notify(self, update: Update) -> None:
        for observer in list(self._observers):
            try:
                observer(self.view, update)
            except Exception as e:
                logger.error(f"View observer error: {e}")
