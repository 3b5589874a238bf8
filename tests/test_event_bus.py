"""Tests for push subscriptions and their epoch guard."""

import pytest

from callsync.services.event_bus import (
    HAND_RAISED_CHANGED,
    STREAMS,
    UNREAD_COUNT_CHANGED,
    VIDEO_FRAME,
    EventSubscriptionBus,
)
from callsync.services.gateway import SessionCommandGateway

from conftest import settle


def _bus(engine, store):
    return EventSubscriptionBus(engine, store, SessionCommandGateway(engine))


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribes_every_stream_once(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        await bus.subscribe_all(store.epoch)
        assert bus.subscription_count == len(STREAMS)
        assert engine.listener_count() == len(STREAMS)

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_handlers(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        bus.unsubscribe_all()
        assert not bus.active
        assert engine.listener_count() == 0


class TestHandlers:
    @pytest.mark.asyncio
    async def test_frames_latest_wins(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        for data in ("f1", "f2", "f3"):
            engine.emit(VIDEO_FRAME, {"track_sid": "t1", "data": data, "width": 2, "height": 2})
        await settle(store)
        assert len(store.frames) == 1
        assert store.frames.get("t1").data == "f3"

    @pytest.mark.asyncio
    async def test_unread_push(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        engine.emit(UNREAD_COUNT_CHANGED, 3)
        await settle(store)
        assert store.view.unread_count == 3

    @pytest.mark.asyncio
    async def test_malformed_payloads_dropped(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        engine.emit(VIDEO_FRAME, {"data": "no track"})
        engine.emit(UNREAD_COUNT_CHANGED, "many")
        engine.emit(HAND_RAISED_CHANGED, "raised!")
        await settle(store)
        assert len(store.frames) == 0
        assert store.view.unread_count == 0
        assert store.applied == 0

    @pytest.mark.asyncio
    async def test_lowered_hand_requeries_own_state(self, engine, store):
        bus = _bus(engine, store)
        store.view.hand_raised = True
        await bus.subscribe_all(store.epoch)
        engine.results["is_hand_raised"] = False

        engine.emit(HAND_RAISED_CHANGED, {"participantSid": "me", "raised": True, "position": 1})
        engine.emit(HAND_RAISED_CHANGED, {"participantSid": "me", "raised": False})
        await settle(store)

        assert engine.called("is_hand_raised") == [{}]
        assert store.view.hand_raise_map == {}
        assert store.view.hand_raised is False

    @pytest.mark.asyncio
    async def test_requery_failure_is_swallowed(self, engine, store):
        bus = _bus(engine, store)
        store.view.hand_raised = True
        await bus.subscribe_all(store.epoch)
        engine.fail("is_hand_raised")
        engine.emit(HAND_RAISED_CHANGED, {"participantSid": "me", "raised": False})
        await settle(store)
        assert store.view.hand_raised is True


class TestEpochGuard:
    @pytest.mark.asyncio
    async def test_late_event_from_old_call_discarded(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        # keep a handle on the old handler as a misbehaving engine would
        stale_handler = engine.listeners[UNREAD_COUNT_CHANGED][0]

        bus.unsubscribe_all()
        store.advance_epoch()
        stale_handler(7)
        await settle(store)

        assert store.view.unread_count == 0
        assert bus.dropped[UNREAD_COUNT_CHANGED] == 1

    @pytest.mark.asyncio
    async def test_queued_update_discarded_after_epoch_moves(self, engine, store):
        bus = _bus(engine, store)
        await bus.subscribe_all(store.epoch)
        engine.emit(VIDEO_FRAME, {"track_sid": "t1", "data": "x"})
        # teardown before the writer got to it
        bus.unsubscribe_all()
        store.advance_epoch()
        await settle(store)
        assert len(store.frames) == 0
