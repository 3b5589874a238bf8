"""Tests for the in-process demo engine, alone and driven by a real session."""

import asyncio
import base64

import cv2
import numpy as np
import pytest
import pytest_asyncio

from callsync.core.config import DemoConfig
from callsync.core.models import Screen
from callsync.services.demo_engine import LOCAL_SID, DemoEngine, render_frame
from callsync.services.event_bus import HAND_RAISED_CHANGED, UNREAD_COUNT_CHANGED
from callsync.services.frame_cache import LOCAL_CAMERA_TRACK
from callsync.session import CallSession

from conftest import settle

FAST = DemoConfig(frame_interval=0.01, frame_width=64, frame_height=36, activity_interval=3600.0)


@pytest_asyncio.fixture()
async def demo():
    engine = DemoEngine(cfg=FAST, seed=7)
    yield engine
    await engine.close()


class TestRenderFrame:
    def test_is_decodable_jpeg_of_requested_size(self):
        data = render_frame("Ada", 0.0, 64, 36, 70)
        img = cv2.imdecode(np.frombuffer(base64.b64decode(data), np.uint8), cv2.IMREAD_COLOR)
        assert img.shape == (36, 64, 3)


class TestCommands:
    @pytest.mark.asyncio
    async def test_connect_populates_room(self, demo):
        await demo.invoke("connect", meet_url="demo", username="Ada")
        assert await demo.invoke("get_connection_state") == "connected"
        people = await demo.invoke("get_participants")
        assert {p["sid"] for p in people} >= {LOCAL_SID}
        assert len(people) == 3

    @pytest.mark.asyncio
    async def test_unknown_command(self, demo):
        with pytest.raises(ValueError):
            await demo.invoke("teleport")

    @pytest.mark.asyncio
    async def test_device_commands_need_connection(self, demo):
        with pytest.raises(RuntimeError):
            await demo.invoke("toggle_mic", enabled=True)

    @pytest.mark.asyncio
    async def test_camera_exposes_local_track(self, demo):
        await demo.invoke("connect", meet_url="demo", username="Ada")
        await demo.invoke("toggle_camera", enabled=True)
        people = {p["sid"]: p for p in await demo.invoke("get_participants")}
        assert people[LOCAL_SID]["video_track_sid"] == LOCAL_CAMERA_TRACK

    @pytest.mark.asyncio
    async def test_hand_queue_positions(self, demo):
        events = []
        await demo.listen(HAND_RAISED_CHANGED, events.append)
        await demo.invoke("connect", meet_url="demo")
        await demo.invoke("raise_hand")
        assert await demo.invoke("is_hand_raised") is True
        assert events[-1] == {"participantSid": LOCAL_SID, "raised": True, "position": 1}

        await demo.invoke("lower_hand")
        assert await demo.invoke("is_hand_raised") is False
        assert events[-1]["raised"] is False

    @pytest.mark.asyncio
    async def test_opening_chat_resets_unread(self, demo):
        pushed = []
        await demo.listen(UNREAD_COUNT_CHANGED, pushed.append)
        await demo.invoke("connect", meet_url="demo")
        demo._unread = 2
        await demo.invoke("set_chat_open", open=True)
        assert pushed == [0]

    @pytest.mark.asyncio
    async def test_settings_round_trip(self, demo):
        await demo.invoke("set_theme", theme="dark")
        await demo.invoke("set_mic_enabled_on_join", enabled=False)
        settings = await demo.invoke("get_settings")
        assert settings["theme"] == "dark"
        assert settings["mic_enabled_on_join"] is False

    @pytest.mark.asyncio
    async def test_unlisten(self, demo):
        unlisten = await demo.listen(UNREAD_COUNT_CHANGED, lambda _: None)
        unlisten()
        assert demo.listener_count() == 0


class TestWithSession:
    @pytest.mark.asyncio
    async def test_frames_flow_into_cache(self, demo):
        session = CallSession(demo, poll_interval=3600)
        session.store.start()
        try:
            await session.join("demo", "Ada")
            await asyncio.sleep(0.05)
            await settle(session.store)

            assert session.view.screen is Screen.CALL
            assert len(session.view.participants.current) == 3
            assert demo.frames_emitted > 0
            assert "TR_ada" in session.store.frames
            assert session.store.frames.decode("TR_ada").shape == (36, 64, 3)
            # mic_enabled_on_join defaults to on
            assert session.view.mic_enabled.value is True
        finally:
            await session.close()
            await session.store.close()

    @pytest.mark.asyncio
    async def test_dropped_connection_returns_home(self, demo):
        session = CallSession(demo, poll_interval=3600)
        session.store.start()
        try:
            await session.join("demo", "Ada")
            await settle(session.store)
            await demo.drop_connection()

            await session.reconciler.poll_once()
            await settle(session.store)
            assert session.view.screen is Screen.HOME
            assert len(session.store.frames) == 0
            assert demo.listener_count() == 0
        finally:
            await session.store.close()
