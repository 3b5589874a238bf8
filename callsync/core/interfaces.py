"""
CallSync — Engine Boundary

Protocol definitions for the two narrow channels into the session engine:
  1. Commands — request/response ("invoke an operation, await a result")
  2. Events   — named push streams ("subscribe, receive payloads")

Nothing in this package reaches the engine any other way.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Union, runtime_checkable

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]
Unlisten = Callable[[], None]


# ═══════════════════════════════════════════════════════════════════════════
# Command channel
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class CommandChannel(Protocol):
    """Owns request/response calls.  Must always eventually resolve or raise."""

    async def invoke(self, command: str, **args: Any) -> Any:
        """Run `command` inside the engine and return its raw result."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Event channel
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class EventChannel(Protocol):
    """Owns push subscriptions.  Delivers a stream's payloads in emission order."""

    async def listen(self, event: str, handler: EventHandler) -> Unlisten:
        """
        Register `handler` for `event`.
        Returns a zero-argument callable that removes the handler.
        """
        ...


@runtime_checkable
class Engine(CommandChannel, EventChannel, Protocol):
    """Both channels on one object, which is how most engines ship."""
