"""
CallSync — Application Context

Owns the one engine, store and call session a process runs.  Built and
torn down explicitly (the server does it in its lifespan) instead of
living in module globals, so tests can build as many as they like.
"""

from __future__ import annotations

import logging
from typing import Optional

from .core.config import SyncConfig, sync_cfg
from .core.interfaces import Engine
from .core.store import SessionStore
from .session import CallSession
from .services.demo_engine import DemoEngine

logger = logging.getLogger("callsync.app")


class AppContext:
    """
    Usage:
        ctx = AppContext()              # demo engine
        await ctx.start()
        await ctx.session.join(url, name)
        await ctx.close()
    """

    def __init__(self, engine: Optional[Engine] = None, cfg: SyncConfig = sync_cfg) -> None:
        self.engine: Engine = engine if engine is not None else DemoEngine()
        self.store = SessionStore()
        self.session = CallSession(self.engine, store=self.store, poll_interval=cfg.poll_interval)
        self._started = False

    @property
    def engine_name(self) -> str:
        return type(self.engine).__name__

    async def start(self) -> None:
        if self._started:
            return
        self.store.start()
        await self.session.load_settings()
        self._started = True
        logger.info(f"Context started with {self.engine_name}")

    async def close(self) -> None:
        try:
            await self.session.close()
        except Exception as e:
            logger.error(f"Error leaving call during shutdown: {e}")
        await self.store.close()

        close_engine = getattr(self.engine, "close", None)
        if close_engine is not None:
            await close_engine()
        self._started = False
        logger.info("Context closed")
