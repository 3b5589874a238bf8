"""
CallSync — Configuration

Settings from environment variables, read once at import.
Tunables live here so no other module hard-codes a number.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


# ---------------------------------------------------------------------------
# Control API server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:1420",
        "http://127.0.0.1:1420",
        "tauri://localhost",
    )


# ---------------------------------------------------------------------------
# Reconciliation tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncConfig:
    # Seconds between snapshot pulls while in a call
    poll_interval: float = float(os.getenv("SYNC_POLL_INTERVAL", "1.0"))
    # Consecutive failed ticks before the view is flagged degraded
    degraded_after: int = int(os.getenv("SYNC_DEGRADED_AFTER", "3"))
    # Failed pulls a stale snapshot survives before it is treated as unknown
    stale_cycles: int = int(os.getenv("SYNC_STALE_CYCLES", "1"))


# ---------------------------------------------------------------------------
# Demo engine tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DemoConfig:
    """Knobs for the in-process simulated engine."""
    # Seconds between synthetic video frames per track
    frame_interval: float = float(os.getenv("DEMO_FRAME_INTERVAL", "0.5"))
    frame_width: int = int(os.getenv("DEMO_FRAME_WIDTH", "320"))
    frame_height: int = int(os.getenv("DEMO_FRAME_HEIGHT", "180"))
    jpeg_quality: int = int(os.getenv("DEMO_JPEG_QUALITY", "70"))
    # Seconds between simulated remote activity (chat lines, hand raises)
    activity_interval: float = float(os.getenv("DEMO_ACTIVITY_INTERVAL", "6.0"))


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
sync_cfg = SyncConfig()
demo_cfg = DemoConfig()
