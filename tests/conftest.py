"""
Pytest fixtures shared across all test modules.
A scriptable in-memory engine stands in for the real one: tests decide
what each command returns or raises, and push events by hand.
"""

import os

# Set env vars BEFORE any callsync module is imported
os.environ["SYNC_POLL_INTERVAL"] = "3600"
os.environ["SYNC_DEGRADED_AFTER"] = "3"
os.environ["SYNC_STALE_CYCLES"] = "1"

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple

import pytest
import pytest_asyncio

from callsync.core.store import SessionStore  # noqa: E402
from callsync.session import CallSession  # noqa: E402


# ---------------------------------------------------------------------------
# Fake engine
# ---------------------------------------------------------------------------

class FakeEngine:
    """Both engine channels, fully under test control."""

    def __init__(self) -> None:
        self.results: Dict[str, Any] = {
            "get_connection_state": "connected",
            "get_participants": [],
            "get_messages": [],
            "get_settings": {},
            "is_hand_raised": False,
        }
        self.errors: Dict[str, Exception] = {}
        self.listen_errors: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.listeners: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)

    async def invoke(self, command: str, **args: Any) -> Any:
        self.calls.append((command, args))
        gate = self.gates.get(command)
        if gate is not None:
            await gate.wait()
        if command in self.errors:
            raise self.errors[command]
        result = self.results.get(command)
        return result() if callable(result) else result

    async def listen(self, event: str, handler: Callable[[Any], Any]):
        if event in self.listen_errors:
            raise self.listen_errors[event]
        self.listeners[event].append(handler)

        def unlisten() -> None:
            if handler in self.listeners[event]:
                self.listeners[event].remove(handler)

        return unlisten

    # ── Scripting helpers ──

    def emit(self, event: str, payload: Any) -> None:
        for handler in list(self.listeners[event]):
            handler(payload)

    def fail(self, command: str, message: str = "engine said no") -> None:
        self.errors[command] = RuntimeError(message)

    def succeed(self, command: str) -> None:
        self.errors.pop(command, None)

    def hold(self, command: str) -> asyncio.Event:
        """Block `command` until the returned event is set."""
        gate = asyncio.Event()
        self.gates[command] = gate
        return gate

    def called(self, command: str) -> List[Dict[str, Any]]:
        return [args for name, args in self.calls if name == command]

    def listener_count(self) -> int:
        return sum(len(h) for h in self.listeners.values())


def participant(sid: str, name: str = None, **extra: Any) -> Dict[str, Any]:
    payload = {"sid": sid, "identity": sid, "name": name or sid}
    payload.update(extra)
    return payload


def message(mid: str, text: str = "hi", sender: str = "p1") -> Dict[str, Any]:
    return {"id": mid, "sender_sid": sender, "text": text, "timestamp_ms": 1}


async def settle(store: SessionStore, rounds: int = 10) -> None:
    """Let background tasks run, then wait for the mailbox to empty."""
    for _ in range(2):
        for _ in range(rounds):
            await asyncio.sleep(0)
        await store.drain()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest_asyncio.fixture()
async def store():
    s = SessionStore()
    s.start()
    yield s
    await s.close()


@pytest_asyncio.fixture()
async def session(engine):
    s = CallSession(engine)
    # on-join toggles are opted into per test
    s.settings.mic_enabled_on_join = False
    s.store.start()
    yield s
    s.reconciler.stop()
    s.bus.unsubscribe_all()
    await s.store.close()
