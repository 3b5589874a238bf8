"""
CallSync — Poll Health (Policy Layer)

Decides when repeated snapshot failures should show up in the view.
The reconciliation loop reports raw outcomes; this module decides.
A degraded view is a hint only.  It never forces a disconnect; that
decision belongs to the engine.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from .config import sync_cfg

logger = logging.getLogger("callsync.health")


class PollHealth:
    """Consecutive-failure bookkeeping for one polling run."""

    def __init__(self, degraded_after: int = sync_cfg.degraded_after) -> None:
        self._degraded_after = max(1, degraded_after)
        self._consecutive_failures = 0
        self._total_failures = 0
        self._ticks = 0
        self._last_success: float = 0.0
        self._last_error: Optional[str] = None

    # ── Signal setters (called by the loop) ─────────────────────────────

    def record_success(self) -> None:
        if self._consecutive_failures >= self._degraded_after:
            logger.info(
                f"Snapshots recovered after {self._consecutive_failures} failed ticks"
            )
        self._ticks += 1
        self._consecutive_failures = 0
        self._last_success = time.time()
        self._last_error = None

    def record_failure(self, error: str) -> None:
        self._ticks += 1
        self._consecutive_failures += 1
        self._total_failures += 1
        self._last_error = error
        if self._consecutive_failures == self._degraded_after:
            logger.warning(
                f"{self._consecutive_failures} consecutive poll failures — flagging degraded"
            )

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._last_error = None

    # ── Decisions ───────────────────────────────────────────────────────

    @property
    def degraded(self) -> bool:
        return self._consecutive_failures >= self._degraded_after

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "ticks": self._ticks,
            "consecutive_failures": self._consecutive_failures,
            "total_failures": self._total_failures,
            "degraded": self.degraded,
            "last_success_age_s": (
                round(time.time() - self._last_success, 2) if self._last_success > 0 else None
            ),
            "last_error": self._last_error,
        }
