"""
CallSync — Errors

Only command failures travel back to the caller.  Poll and event
failures are logged where they happen and never raised past the
component that hit them.
"""

from __future__ import annotations

from typing import Optional


class CallSyncError(Exception):
    """Base class for everything this package raises."""


class CommandError(CallSyncError):
    """A request to the engine was rejected or could not be issued."""

    def __init__(self, command: str, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{command}: {message}")
        self.command = command
        self.message = message
        self.cause = cause


class PayloadError(CommandError):
    """The engine answered, but with a payload we cannot interpret."""


class StaleUpdateError(CallSyncError):
    """An update belonged to a call that has already been torn down."""

    def __init__(self, update: str, epoch: int, current: int) -> None:
        super().__init__(f"{update} from epoch {epoch} discarded (current epoch {current})")
        self.update = update
        self.epoch = epoch
        self.current = current
