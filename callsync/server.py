"""
CallSync — FastAPI Server

================================================================================
Architecture:
  • One AppContext per process: engine + session store + call session
  • The renderer reads the view over REST or gets it pushed over WebSocket
    after every applied update; it never writes the view directly
  • User intents arrive over the same WebSocket and go through CallSession,
    so optimistic updates, rollback and notices behave the same for every
    client
================================================================================

Endpoints:
  WS  /ws/session           — state stream + user intents
  GET /health               — server health
  GET /state                — current view snapshot
  GET /settings             — persisted preferences
  PUT /settings             — explicit save (partial payload)
  GET /frames/{track_id}    — latest still for a video track (image/jpeg)

Client → Server messages:
  { type: "join", url: "...", display_name: "..." }
  { type: "hang_up" }
  { type: "toggle_mic" } / { type: "toggle_camera" } / { type: "toggle_hand" }
  { type: "toggle_chat" }
  { type: "send_chat", text: "..." }
  { type: "toggle_picker", kind: "mic" | "camera" }
  { type: "focus", target: "mic_picker" | "camera_picker" | "elsewhere" }
  { type: "select_audio_input", device_id: "..." }
  { type: "select_video_input", device_id: "..." }
  { type: "dismiss_notice" }
  { type: "ping" }                           → keepalive

Server → Client messages:
  { type: "state", data: {...} }             → view snapshot
  { type: "tracks", data: [...] }           → video track set changed
  { type: "pong" }                           → keepalive ack
  { type: "error", message: "..." }          → command refused
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .app_context import AppContext
from .core.config import server_cfg
from .core.errors import CommandError
from .core.interfaces import Engine
from .core.models import FocusTarget, PickerState, ViewState
from .core.updates import Update, UpsertFrame
from .session import CallSession

VERSION = "0.1.0"

# Pending state pushes per WebSocket; older snapshots are dropped first
STATE_QUEUE_MAX = 8

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("callsync.server")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)


# ---------------------------------------------------------------------------
# Intent dispatch
# ---------------------------------------------------------------------------

Intent = Callable[[CallSession, Dict[str, Any]], Awaitable[Any]]

INTENTS: Dict[str, Intent] = {
    "join": lambda s, m: s.join(m.get("url", ""), m.get("display_name")),
    "hang_up": lambda s, m: s.hang_up(),
    "toggle_mic": lambda s, m: s.toggle_mic(),
    "toggle_camera": lambda s, m: s.toggle_camera(),
    "toggle_hand": lambda s, m: s.toggle_hand(),
    "toggle_chat": lambda s, m: s.toggle_chat(),
    "send_chat": lambda s, m: s.send_chat(m.get("text", "")),
    "toggle_picker": lambda s, m: s.toggle_picker(PickerState(m.get("kind", ""))),
    "focus": lambda s, m: s.focus(FocusTarget(m.get("target", ""))),
    "select_audio_input": lambda s, m: s.select_audio_input(m.get("device_id")),
    "select_video_input": lambda s, m: s.select_video_input(m.get("device_id")),
    "dismiss_notice": lambda s, m: s.dismiss_notice(),
}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """Build the control API around `engine` (the demo engine when None)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 CallSync starting...")
        ctx = AppContext(engine=engine)
        await ctx.start()
        app.state.context = ctx
        logger.info(f"   Engine: {ctx.engine_name}")
        yield
        logger.info("🛑 Shutting down — leaving any active call...")
        await ctx.close()
        logger.info("🛑 CallSync stopped")

    app = FastAPI(
        title="CallSync — Call Session State Synchronizer",
        version=VERSION,
        description=(
            "Keeps a renderable view of a live call consistent with an "
            "external session engine, and relays user intents back to it."
        ),
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server_cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def context(request: Request) -> AppContext:
        return request.app.state.context

    # ── REST ────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request):
        ctx = context(request)
        return {
            "status": "ok",
            "version": VERSION,
            "engine": ctx.engine_name,
            "screen": ctx.store.view.screen.value,
            "degraded": ctx.store.view.degraded,
            "reconciler": ctx.session.reconciler.state,
            "calls_completed": ctx.store.machine.calls_completed,
            "poll": ctx.session.reconciler.health.diagnostics(),
        }

    @app.get("/state")
    async def state(request: Request):
        return context(request).session.snapshot()

    @app.get("/settings")
    async def get_settings(request: Request):
        return context(request).session.settings.to_dict()

    @app.put("/settings")
    async def put_settings(request: Request, changes: Dict[str, Any] = Body(...)):
        try:
            saved = await context(request).session.save_settings(changes)
        except CommandError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        return saved.to_dict()

    @app.get("/frames/{track_id}")
    async def frame(request: Request, track_id: str):
        data = context(request).store.frames.jpeg_bytes(track_id)
        if data is None:
            raise HTTPException(status_code=404, detail=f"no frame for track {track_id}")
        return Response(content=data, media_type="image/jpeg")

    # ── WebSocket ───────────────────────────────────────────────────────

    @app.websocket("/ws/session")
    async def websocket_session(ws: WebSocket):
        """
        Pushes the view after every applied update and accepts intents.
        A slow client only ever misses intermediate snapshots, never the latest.
        """
        await ws.accept()
        ctx: AppContext = ws.app.state.context
        session = ctx.session
        client_id = uuid.uuid4().hex[:8]

        outbox: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=STATE_QUEUE_MAX)

        def enqueue(data: Dict[str, Any]) -> None:
            if outbox.full():
                try:
                    outbox.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            outbox.put_nowait(data)

        pushed_tracks: List[str] = []

        def push_state() -> None:
            data = session.snapshot()
            pushed_tracks[:] = data["tracks"]
            enqueue({"type": "state", "data": data})

        def on_view(_view: ViewState, update: Update) -> None:
            if isinstance(update, UpsertFrame):
                # frames are fetched over REST, only a new track is news here
                tracks = ctx.store.frames.track_ids()
                if tracks != pushed_tracks:
                    pushed_tracks[:] = tracks
                    enqueue({"type": "tracks", "data": tracks})
                return
            push_state()

        async def sender() -> None:
            while True:
                data = await outbox.get()
                await ws.send_text(json.dumps(data))

        unsubscribe = ctx.store.subscribe(on_view)
        send_task = asyncio.create_task(sender(), name=f"ws-send-{client_id}")
        push_state()
        logger.info(f"[{client_id}] Renderer connected")

        try:
            while True:
                raw = await ws.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    enqueue({"type": "error", "message": "invalid JSON"})
                    continue
                if not isinstance(message, dict):
                    enqueue({"type": "error", "message": "message must be an object"})
                    continue

                msg_type = message.get("type", "")

                # ── Keepalive ──
                if msg_type == "ping":
                    enqueue({"type": "pong"})
                    continue

                intent = INTENTS.get(msg_type)
                if intent is None:
                    enqueue({"type": "error", "message": f"unknown message type: {msg_type!r}"})
                    continue

                try:
                    await intent(session, message)
                except CommandError as e:
                    enqueue({"type": "error", "message": str(e)})
                except ValueError as e:
                    enqueue({"type": "error", "message": f"{msg_type}: {e}"})

        except WebSocketDisconnect:
            logger.info(f"[{client_id}] Renderer disconnected")
        except Exception as e:
            logger.error(f"[{client_id}] WebSocket error: {e}", exc_info=True)
        finally:
            unsubscribe()
            send_task.cancel()
            try:
                await send_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"[{client_id}] Sender ended with: {e}")

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "callsync.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )
