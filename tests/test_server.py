"""Tests for the control API (REST + /ws/session)."""

import base64

import pytest
from fastapi.testclient import TestClient

from callsync.core.models import MediaFrame
from callsync.server import create_app

from callsync.services.event_bus import VIDEO_FRAME

from conftest import FakeEngine, participant


@pytest.fixture()
def engine():
    e = FakeEngine()
    e.results["get_settings"] = {"display_name": "Ada", "mic_enabled_on_join": False}
    e.results["get_participants"] = [participant("p1", "Ada")]
    return e


@pytest.fixture()
def client(engine):
    with TestClient(create_app(engine=engine)) as c:
        yield c


def receive_until(ws, predicate, limit=50):
    for _ in range(limit):
        msg = ws.receive_json()
        if predicate(msg):
            return msg
    raise AssertionError("expected message never arrived")


def is_state(**expected):
    def check(msg):
        return msg["type"] == "state" and all(msg["data"].get(k) == v for k, v in expected.items())
    return check


class TestRest:
    def test_health(self, client: TestClient):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["screen"] == "home"
        assert data["engine"] == "FakeEngine"
        assert data["calls_completed"] == 0

    def test_state(self, client: TestClient):
        data = client.get("/state").json()
        assert data["screen"] == "home"
        assert data["participants"] == []

    def test_settings_loaded_at_startup(self, client: TestClient):
        assert client.get("/settings").json()["display_name"] == "Ada"

    def test_put_settings_partial(self, client: TestClient, engine):
        resp = client.put("/settings", json={"theme": "dark"})
        assert resp.status_code == 200
        assert resp.json()["theme"] == "dark"
        assert resp.json()["display_name"] == "Ada"
        assert engine.called("set_theme") == [{"theme": "dark"}]

    def test_put_settings_rejects_unknown(self, client: TestClient):
        resp = client.put("/settings", json={"volume": 11})
        assert resp.status_code == 400

    def test_put_settings_engine_failure(self, client: TestClient, engine):
        engine.fail("set_language", "disk full")
        resp = client.put("/settings", json={"language": "fr"})
        assert resp.status_code == 400
        assert "disk full" in resp.json()["error"]

    def test_frame_missing(self, client: TestClient):
        assert client.get("/frames/t1").status_code == 404

    def test_frame_served_as_jpeg(self, client: TestClient):
        raw = b"\xff\xd8\xff\xe0fake"
        client.app.state.context.store.frames.put(
            MediaFrame("t1", base64.b64encode(raw).decode(), 2, 2)
        )
        resp = client.get("/frames/t1")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/jpeg"
        assert resp.content == raw


class TestWebSocket:
    def test_initial_state_pushed(self, client: TestClient):
        with client.websocket_connect("/ws/session") as ws:
            msg = ws.receive_json()
            assert msg["type"] == "state"
            assert msg["data"]["screen"] == "home"

    def test_ping(self, client: TestClient):
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "ping"})
            receive_until(ws, lambda m: m["type"] == "pong")

    def test_join_then_hang_up(self, client: TestClient, engine):
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "join", "url": "meet.example.com/abc", "display_name": "Ada"})
            receive_until(ws, is_state(screen="call"))
            msg = receive_until(ws, lambda m: m["type"] == "state" and m["data"]["participants"])
            assert msg["data"]["participants"][0]["id"] == "p1"

            ws.send_json({"type": "hang_up"})
            receive_until(ws, is_state(screen="home"))
        assert engine.called("disconnect") == [{}]

    def test_command_failure_reported(self, client: TestClient, engine):
        engine.fail("connect", "room not found")
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "join", "url": "meet.example.com/nope"})
            msg = receive_until(ws, lambda m: m["type"] == "error")
            assert "room not found" in msg["message"]

    def test_intent_outside_call_reported(self, client: TestClient):
        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "toggle_mic"})
            msg = receive_until(ws, lambda m: m["type"] == "error")
            assert "not in a call" in msg["message"]

    def test_bad_messages(self, client: TestClient):
        with client.websocket_connect("/ws/session") as ws:
            ws.send_text("{not json")
            assert receive_until(ws, lambda m: m["type"] == "error")["message"] == "invalid JSON"
            ws.send_json({"type": "teleport"})
            assert "unknown message type" in receive_until(ws, lambda m: m["type"] == "error")["message"]
            ws.send_json({"type": "toggle_picker", "kind": "speaker"})
            assert "toggle_picker" in receive_until(ws, lambda m: m["type"] == "error")["message"]

    def test_frames_push_track_set_not_full_state(self, client: TestClient, engine):
        ctx = client.app.state.context

        async def push_frames():
            engine.emit(VIDEO_FRAME, {"track_sid": "t1", "data": "abc"})
            engine.emit(VIDEO_FRAME, {"track_sid": "t1", "data": "def"})
            await ctx.store.drain()

        with client.websocket_connect("/ws/session") as ws:
            ws.send_json({"type": "join", "url": "meet.example.com/abc"})
            receive_until(ws, is_state(screen="call"))

            client.portal.call(push_frames)
            ws.send_json({"type": "ping"})
            seen = []
            while True:
                msg = ws.receive_json()
                if msg["type"] == "pong":
                    break
                seen.append(msg)

        tracks = [m for m in seen if m["type"] == "tracks"]
        assert [m["data"] for m in tracks] == [["t1"]]
