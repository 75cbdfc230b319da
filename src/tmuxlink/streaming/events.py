"""Events emitted by a terminal streaming session to its renderer.

Public API (the "studs"):
    EventType: Kinds of events, in the order a renderer first sees them
    TerminalEvent: One event (immutable)
    RESET_SEQUENCE: Bytes that return a renderer to a sane default mode
"""

from dataclasses import dataclass
from enum import Enum

# Leave alternate screen, soft terminal reset (DECSTR), default attributes,
# show cursor.
RESET_SEQUENCE = b"\x1b[?1049l\x1b[!p\x1b[0m\x1b[?25h"


class EventType(str, Enum):
    """Event kinds."""

    INITIAL_STATE = "initial-state"
    HISTORY = "history"
    DATA = "data"
    RECONCILIATION = "reconciliation"
    STATUS_CHANGED = "status-changed"
    RESET = "reset"
    EXIT = "exit"


@dataclass(frozen=True)
class TerminalEvent:
    """One event in a session's ordered event stream.

    Attributes:
        type: Event kind
        data: Raw bytes (initial-state, history, data, reconciliation, reset)
        epoch: Resize epoch active when the bytes were read
        alternate_screen: New alternate-screen flag (status-changed)
        reason: Why the stream ended (exit)
        error: Underlying error, if the stream ended abnormally (exit)
    """

    type: EventType
    data: bytes = b""
    epoch: int = 0
    alternate_screen: bool | None = None
    reason: str | None = None
    error: Exception | None = None

    @classmethod
    def reset(cls, epoch: int = 0) -> "TerminalEvent":
        return cls(EventType.RESET, data=RESET_SEQUENCE, epoch=epoch)

    @classmethod
    def exit(cls, reason: str, error: Exception | None = None, epoch: int = 0) -> "TerminalEvent":
        return cls(EventType.EXIT, epoch=epoch, reason=reason, error=error)

    @property
    def is_snapshot(self) -> bool:
        """True for events the renderer applies as a full replace."""
        return self.type in (EventType.INITIAL_STATE, EventType.RECONCILIATION)


__all__ = ["RESET_SEQUENCE", "EventType", "TerminalEvent"]
