"""Terminal manager - the control surface for many streaming sessions.

Public API (the "studs"):
    TerminalManager: attach / resize / write / detach keyed by handle id
    StreamHandle: What attach() returns
"""

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass

from tmuxlink.executor_factory import ExecutorFactory
from tmuxlink.streaming.events import TerminalEvent
from tmuxlink.streaming.session import StreamMode, TerminalStreamingSession
from tmuxlink.streaming.settings import StreamingSettings
from tmuxlink.tmux_executor import SessionTarget

logger = logging.getLogger(__name__)


@dataclass
class StreamHandle:
    """A live attachment to one target session."""

    id: str
    target: SessionTarget
    session: TerminalStreamingSession

    @property
    def mode(self) -> StreamMode:
        return self.session.mode

    @property
    def epoch(self) -> int:
        return self.session.epoch

    def events(self) -> AsyncIterator[TerminalEvent]:
        return self.session.events()


class TerminalManager:
    """Owns the streaming sessions of one client process.

    All methods run on one event loop; the handle map is only changed
    between awaits, so it needs no lock.

    Example:
        >>> manager = TerminalManager(ExecutorFactory(pool))
        >>> handle = await manager.attach(SessionTarget(name="dev"), cols=120, rows=40)
        >>> await manager.write(handle.id, b"ls\\r")
        >>> await manager.detach(handle.id)
    """

    def __init__(self, factory: ExecutorFactory, settings: StreamingSettings | None = None):
        self.factory = factory
        self.settings = settings or StreamingSettings()
        self._handles: dict[str, StreamHandle] = {}

    async def attach(
        self,
        target: SessionTarget,
        cols: int = 80,
        rows: int = 24,
        handle_id: str | None = None,
    ) -> StreamHandle:
        """Attach to a target session and start streaming.

        Re-using the id of a handle that is still open returns that handle.

        Raises:
            ConnectionUnavailable: If the target's host is unknown or unreachable
            TransportError: If the bootstrap fails
        """
        if handle_id is not None:
            existing = self._handles.get(handle_id)
            if existing is not None and not existing.session.is_detached:
                return existing
        handle_id = handle_id or uuid.uuid4().hex[:12]

        executor = self.factory.for_target(target)
        session = TerminalStreamingSession(executor, target, self.settings)
        handle = StreamHandle(id=handle_id, target=target, session=session)
        self._handles[handle_id] = handle

        try:
            await session.start(cols, rows)
        except BaseException:
            self._handles.pop(handle_id, None)
            await session.close()
            raise

        logger.info(f"Stream {handle_id} attached to {target}")
        return handle

    def _require(self, handle_id: str) -> StreamHandle:
        handle = self._handles.get(handle_id)
        if handle is None:
            raise KeyError(f"Unknown stream handle: {handle_id}")
        return handle

    async def resize(self, handle_id: str, cols: int, rows: int) -> int:
        """Resize a stream; returns the new resize epoch."""
        return await self._require(handle_id).session.resize(cols, rows)

    async def write(self, handle_id: str, data: bytes) -> bool:
        return await self._require(handle_id).session.write(data)

    async def reattach(self, handle_id: str) -> None:
        await self._require(handle_id).session.reattach()

    async def detach(self, handle_id: str, destroy: bool = False) -> None:
        """Close a stream (the tmux session survives unless ``destroy``)."""
        handle = self._handles.pop(handle_id, None)
        if handle is None:
            logger.debug(f"Detach of unknown handle {handle_id} ignored")
            return
        await handle.session.close(destroy=destroy)
        logger.info(f"Stream {handle_id} detached from {handle.target}")

    async def detach_all(self) -> None:
        for handle_id in list(self._handles):
            await self.detach(handle_id)

    def get(self, handle_id: str) -> StreamHandle | None:
        return self._handles.get(handle_id)

    def list_handles(self) -> list[StreamHandle]:
        return list(self._handles.values())

    def count(self) -> int:
        return len(self._handles)


__all__ = ["StreamHandle", "TerminalManager"]
