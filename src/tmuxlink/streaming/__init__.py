"""Terminal streaming for tmuxlink.

This package contains:
- events: event types delivered to the renderer
- utf8: UTF-8 boundary repair for chunked reads
- settings: tuning knobs (idle threshold, polling intervals, ...)
- viewport_diff: changed-line differ for fallback polling
- session: the attach protocol engine
- manager: attach/resize/write/detach control surface
"""

from tmuxlink.streaming.events import RESET_SEQUENCE, EventType, TerminalEvent
from tmuxlink.streaming.manager import StreamHandle, TerminalManager
from tmuxlink.streaming.session import StreamMode, TerminalStreamingSession
from tmuxlink.streaming.settings import StreamingSettings

__all__ = [
    "RESET_SEQUENCE",
    "EventType",
    "StreamHandle",
    "StreamMode",
    "StreamingSettings",
    "TerminalEvent",
    "TerminalManager",
    "TerminalStreamingSession",
]
