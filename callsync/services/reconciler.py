"""
CallSync — Reconciliation Loop

Pulls authoritative snapshots from the engine at a fixed interval while
the call view is up.

  {idle} --start(epoch)--> {polling} --stop() / engine says disconnected--> {idle}

Each tick:
  1. pull connection state
  2. disconnected → hand off to the session's terminal-loss handler, stop
  3. connected / reconnecting → pull participants + chat concurrently
  4. post ONE ApplyPoll with everything pulled this tick

If step 1 fails, participants and chat count as missed for that tick.

A failing tick is logged and swallowed.  The next tick runs on schedule:
no backoff, no skipping.  Repeated failures only flag the view degraded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..core.config import sync_cfg
from ..core.errors import CommandError
from ..core.health import PollHealth
from ..core.models import SessionConnectionState
from ..core.store import SessionStore
from ..core.updates import ApplyPoll, Pull
from .gateway import SessionCommandGateway

logger = logging.getLogger("callsync.reconcile")

DisconnectHandler = Callable[[str], Awaitable[None]]


class ReconciliationLoop:
    """
    Lifecycle:
        loop = ReconciliationLoop(gateway, store, on_disconnected=session.end_call)
        loop.start(epoch)   # on home → call
        loop.stop()         # on call → home, synchronous
    """

    def __init__(
        self,
        gateway: SessionCommandGateway,
        store: SessionStore,
        on_disconnected: DisconnectHandler,
        interval: float = sync_cfg.poll_interval,
        degraded_after: int = sync_cfg.degraded_after,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._on_disconnected = on_disconnected
        self._interval = interval
        self._degraded_after = degraded_after

        self._epoch: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self.health = PollHealth(degraded_after=degraded_after)
        self.ticks = 0

    @property
    def polling(self) -> bool:
        return self._epoch is not None

    @property
    def state(self) -> str:
        return "polling" if self.polling else "idle"

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self, epoch: int) -> None:
        if self._epoch == epoch and self._task and not self._task.done():
            return
        self.stop()
        self._epoch = epoch
        self.health = PollHealth(degraded_after=self._degraded_after)
        self._task = asyncio.get_running_loop().create_task(
            self._run(epoch), name=f"reconcile-{epoch}"
        )
        logger.info(f"[epoch {epoch}] Reconciliation started (every {self._interval}s)")

    def stop(self) -> None:
        """Cancel the timer.  Safe to call from inside a tick."""
        epoch = self._epoch
        self._epoch = None
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if epoch is not None:
            logger.info(f"[epoch {epoch}] Reconciliation stopped after {self.ticks} ticks")

    # ── Worker ──────────────────────────────────────────────────────────

    async def _run(self, epoch: int) -> None:
        while self._epoch == epoch:
            try:
                finished = await self.tick(epoch)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # tick() already swallows command failures; this is a bug guard
                logger.error(f"[epoch {epoch}] Poll tick crashed: {e}", exc_info=True)
                finished = False
            if finished or self._epoch != epoch:
                break
            await asyncio.sleep(self._interval)

    async def poll_once(self) -> bool:
        """Run a single tick for the current call.  Returns True once terminal."""
        if self._epoch is None:
            return True
        return await self.tick(self._epoch)

    async def tick(self, epoch: int) -> bool:
        self.ticks += 1

        try:
            state = await self._gateway.get_connection_state()
        except CommandError as e:
            self._fail(epoch, f"connection state: {e.message}")
            if self._epoch == epoch:
                # roster and chat were not pulled either, so they age too
                skipped = f"skipped, {e.command}: {e.message}"
                self._store.post(
                    ApplyPoll(
                        connection=Pull(error=e.message),
                        participants=Pull(error=skipped),
                        messages=Pull(error=skipped),
                        degraded=self.health.degraded,
                    ),
                    epoch,
                )
            return False

        if self._epoch != epoch:
            return True

        if state is SessionConnectionState.DISCONNECTED:
            logger.info(f"[epoch {epoch}] Engine reports disconnected — leaving call view")
            self.stop()
            await self._on_disconnected("engine reported disconnected")
            return True

        participants: Optional[Pull] = None
        messages: Optional[Pull] = None
        if state.is_live:
            participants, messages = await asyncio.gather(
                self._pull(self._gateway.get_participants),
                self._pull(self._gateway.get_messages),
            )

        errors = [p.error for p in (participants, messages) if p is not None and not p.ok]
        if errors:
            self._fail(epoch, "; ".join(errors))
        else:
            self.health.record_success()

        if self._epoch != epoch:
            return True

        self._store.post(
            ApplyPoll(
                connection=Pull(value=state),
                participants=participants,
                messages=messages,
                degraded=self.health.degraded,
            ),
            epoch,
        )
        return False

    async def _pull(self, getter: Callable[[], Awaitable[Any]]) -> Pull:
        try:
            return Pull(value=await getter())
        except CommandError as e:
            return Pull(error=f"{e.command}: {e.message}")

    def _fail(self, epoch: int, error: str) -> None:
        self.health.record_failure(error)
        logger.warning(
            f"[epoch {epoch}] Poll failed ({self.health.consecutive_failures} in a row): {error}"
        )
