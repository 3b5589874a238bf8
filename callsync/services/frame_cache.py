"""
CallSync — Media Frame Cache

Latest-wins store of one still frame per video track.  Written by the
event bus (through the session store), read by rendering.  Bounded by
the number of live tracks; cleared wholesale when a call ends so frames
from one call never render in the next.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Dict, List, Optional

import cv2
import numpy as np

from ..core.models import MediaFrame

logger = logging.getLogger("callsync.frames")

# Track id the engine uses for the local camera preview
LOCAL_CAMERA_TRACK = "local-camera"


class MediaFrameCache:
    """trackId → most recent frame.  A new frame always replaces, never queues."""

    def __init__(self) -> None:
        self._frames: Dict[str, MediaFrame] = {}

    def put(self, frame: MediaFrame) -> None:
        self._frames[frame.track_id] = frame

    def get(self, track_id: str) -> Optional[MediaFrame]:
        return self._frames.get(track_id)

    def self_view(self) -> Optional[MediaFrame]:
        return self._frames.get(LOCAL_CAMERA_TRACK)

    def track_ids(self) -> List[str]:
        return list(self._frames.keys())

    def clear(self) -> None:
        if self._frames:
            logger.debug(f"Dropping {len(self._frames)} cached frames")
        self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, track_id: object) -> bool:
        return track_id in self._frames

    # ── Renderer helpers ────────────────────────────────────────────────

    def jpeg_bytes(self, track_id: str) -> Optional[bytes]:
        frame = self._frames.get(track_id)
        if frame is None:
            return None
        try:
            return base64.b64decode(frame.data, validate=True)
        except (binascii.Error, ValueError):
            logger.debug(f"Frame for {track_id} is not valid base64")
            return None

    def decode(self, track_id: str) -> Optional[np.ndarray]:
        """Latest frame for `track_id` as an RGB array, or None."""
        raw = self.jpeg_bytes(track_id)
        if not raw:
            return None
        frame_bgr = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_COLOR)
        if frame_bgr is None:
            logger.debug(f"Frame for {track_id} could not be decoded")
            return None
        return cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
