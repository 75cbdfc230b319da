"""Terminal streaming session - the attach protocol engine.

Philosophy:
- Stream raw bytes; the renderer interprets escape sequences, we never do
- Bootstrap order is screen -> attach -> history (attach-first history)
- Resizes bump an epoch and trust tmux's own redraw; they never reset
- Fallback polling exists only as a safety net
- Every failure ends in exactly one exit event, never a silent stop

Public API (the "studs"):
    TerminalStreamingSession: Per-attached-session engine (asyncio)
    StreamMode: bootstrap / streaming / fallback-polling / closed

Lock scope:
    _lock (asyncio.Lock) guards _mode, _epoch, _process, _tasks, _generation
    and _detached. It is taken once per public operation and by the
    end-of-stream path, never re-entered: helpers documented "lock held"
    assume the caller holds it. Background tasks are cancelled and awaited
    only after the lock is released.

    _last_input, _last_output, _bytes_since_reconcile and _alternate_screen
    are plain attributes written by exactly one task each; asyncio never
    preempts between awaits, so reads from other tasks see whole values.
"""

import asyncio
import logging
import subprocess
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from tmuxlink.errors import (
    AttachFailed,
    LinkUnavailable,
    PartialWriteFailed,
    StreamInterrupted,
    TargetNotFound,
    TransportError,
)
from tmuxlink.pty_process import PtyProcess
from tmuxlink.streaming.events import EventType, TerminalEvent
from tmuxlink.streaming.settings import StreamingSettings
from tmuxlink.streaming.utf8 import Utf8ChunkAssembler
from tmuxlink.streaming.viewport_diff import ViewportDiffer, normalize_crlf
from tmuxlink.tmux_executor import SessionExecutor, SessionTarget

logger = logging.getLogger(__name__)

_END = object()


class StreamMode(str, Enum):
    BOOTSTRAP = "bootstrap"
    STREAMING = "streaming"
    FALLBACK = "fallback-polling"
    CLOSED = "closed"


def _exit_reason(error: Exception | None) -> str:
    if error is None:
        return "exited"
    if isinstance(error, TargetNotFound):
        return "session-ended"
    if isinstance(error, LinkUnavailable):
        return "link-lost"
    if isinstance(error, StreamInterrupted):
        return "interrupted"
    return "failed"


class TerminalStreamingSession:
    """Streams one tmux session to one renderer.

    Example:
        >>> session = TerminalStreamingSession(executor, SessionTarget(name="dev"))
        >>> await session.start(cols=120, rows=40)
        >>> async for event in session.events():
        ...     render(event)
    """

    def __init__(
        self,
        executor: SessionExecutor,
        target: SessionTarget,
        settings: StreamingSettings | None = None,
    ):
        self.executor = executor
        self.target = target
        self.settings = settings or StreamingSettings()

        self.cols = 80
        self.rows = 24

        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._queue: asyncio.Queue = asyncio.Queue()

        self._mode = StreamMode.BOOTSTRAP
        self._epoch = 0
        self._generation = 0
        self._started = False
        self._detached = False
        self._process: PtyProcess | None = None
        self._tasks: list[asyncio.Task] = []

        self._assembler = Utf8ChunkAssembler()
        self._differ = ViewportDiffer()
        self._alternate_screen = False
        self._last_input = 0.0
        self._last_output = 0.0
        self._bytes_since_reconcile = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.target.name

    @property
    def mode(self) -> StreamMode:
        return self._mode

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def alternate_screen(self) -> bool:
        return self._alternate_screen

    @property
    def is_closed(self) -> bool:
        return self._mode is StreamMode.CLOSED

    @property
    def is_detached(self) -> bool:
        return self._detached

    async def events(self) -> AsyncIterator[TerminalEvent]:
        """Yield events in order until the caller closes the session."""
        while True:
            event = await self._queue.get()
            if event is _END:
                return
            yield event

    # ------------------------------------------------------------------
    # Event helpers (synchronous, safe with or without the lock)
    # ------------------------------------------------------------------

    def _emit(self, event: TerminalEvent) -> None:
        if event.type is not EventType.DATA:
            logger.debug(f"{self.target}: emit {event.type.value} ({len(event.data)} bytes)")
        self._queue.put_nowait(event)

    def _emit_snapshot(self, event_type: EventType, text: str) -> None:
        self._emit(TerminalEvent(event_type, data=normalize_crlf(text).encode(), epoch=self._epoch))

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking executor round-trip off the event loop."""
        return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, cols: int = 80, rows: int = 24) -> None:
        """Run the bootstrap sequence and begin streaming.

        Raises:
            TargetNotFound: If the session does not exist
            LinkUnavailable: If the host cannot be reached
            TransportError: If bootstrap fails otherwise (an exit event is
                emitted as well)
        """
        if cols <= 0 or rows <= 0:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")

        async with self._lock:
            if self._started:
                raise RuntimeError(f"Streaming session for {self.target} already started")
            self._started = True
            self.cols, self.rows = cols, rows
            await self._bootstrap()

        logger.info(f"Attached to {self.target} ({cols}x{rows}, {self._mode.value})")

    async def _bootstrap(self) -> None:
        """Bootstrap: geometry, initial screen, attach, history, tasks. Lock held."""
        self._generation += 1
        generation = self._generation
        self._mode = StreamMode.BOOTSTRAP
        self._assembler = Utf8ChunkAssembler()
        self._differ.reset()
        self._bytes_since_reconcile = 0

        executor = self.executor
        name = self.target.name
        process: PtyProcess | None = None

        try:
            await self._apply_geometry(self.cols, self.rows)

            screen = await self._call(executor.capture_screen, name)
            self._emit_snapshot(EventType.INITIAL_STATE, screen)

            try:
                self._alternate_screen = await self._call(executor.is_alternate_screen, name)
            except TargetNotFound:
                raise
            except TransportError as e:
                logger.debug(f"{self.target}: alternate screen query failed: {e}")

            if self.settings.streaming_enabled(executor.is_remote):
                try:
                    process = await self._call(executor.spawn_attach, name, self.cols, self.rows)
                except AttachFailed as e:
                    logger.warning(f"{self.target}: attach failed, falling back to polling: {e}")
                    self._emit(TerminalEvent.reset(self._epoch))
            else:
                logger.info(f"{self.target}: live streaming disabled, using fallback polling")

            # History after the attach channel is open: output produced in
            # between is duplicated at worst, never lost.
            history = await self._call(executor.capture_scrollback, name, self.settings.history_lines)
            self._emit_snapshot(EventType.HISTORY, history)

        except TransportError as e:
            if process is not None:
                await self._call(process.close)
            self._mode = StreamMode.CLOSED
            self._emit(TerminalEvent.reset(self._epoch))
            self._emit(TerminalEvent.exit("bootstrap-failed", e, self._epoch))
            logger.warning(f"{self.target}: bootstrap failed: {e}")
            raise

        now = asyncio.get_running_loop().time()
        self._last_output = now
        self._process = process

        if process is not None:
            self._mode = StreamMode.STREAMING
            self._tasks = [
                asyncio.create_task(self._read_loop(process, generation)),
                asyncio.create_task(self._status_loop(generation)),
                asyncio.create_task(self._idle_loop(generation)),
            ]
        else:
            self._mode = StreamMode.FALLBACK
            self._tasks = [
                asyncio.create_task(self._poll_loop(generation)),
                asyncio.create_task(self._status_loop(generation)),
            ]
        logger.debug(f"{self.target}: bootstrap complete, mode={self._mode.value}")

    async def _apply_geometry(self, cols: int, rows: int) -> None:
        try:
            await self._call(self.executor.resize_window, self.target.name, cols, rows)
        except (TargetNotFound, LinkUnavailable):
            raise
        except TransportError as e:
            error = PartialWriteFailed(
                f"resize of {self.target} to {cols}x{rows} failed: {e}",
                host_id=self.target.host_id or None,
                session_name=self.target.name,
                cause=e,
            )
            logger.warning(str(error))

    def _take_tasks(self) -> list[asyncio.Task]:
        """Detach the task list (lock held); the current task is never included."""
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        return tasks

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _end_stream(self, generation: int, error: Exception | None) -> None:
        """Tear down after the stream ended by itself (process exit or link loss)."""
        async with self._lock:
            if generation != self._generation or self._mode is StreamMode.CLOSED:
                return
            tasks = self._take_tasks()
            process, self._process = self._process, None
            self._mode = StreamMode.CLOSED
            self._emit(TerminalEvent.reset(self._epoch))
            self._emit(TerminalEvent.exit(_exit_reason(error), error, self._epoch))

        await self._cancel_tasks(tasks)
        if process is not None:
            await self._call(process.close)

        if error is None:
            logger.info(f"{self.target}: attach client exited")
        else:
            logger.warning(f"{self.target}: stream ended: {error}")

    async def reattach(self) -> None:
        """Reset the renderer and run the bootstrap again with the last geometry.

        Allowed from any mode except after the caller closed the session.
        """
        async with self._lock:
            if self._detached:
                raise RuntimeError(f"Streaming session for {self.target} was closed")
            tasks = self._take_tasks()
            process, self._process = self._process, None
            self._generation += 1
            self._mode = StreamMode.BOOTSTRAP
            self._emit(TerminalEvent.reset(self._epoch))

        await self._cancel_tasks(tasks)
        if process is not None:
            await self._call(process.close)

        async with self._lock:
            if self._detached:
                return
            await self._bootstrap()
        logger.info(f"Re-attached to {self.target} ({self._mode.value})")

    async def close(self, destroy: bool = False) -> None:
        """Detach from the session (the tmux session keeps running).

        Args:
            destroy: Also kill the tmux session
        """
        async with self._lock:
            if self._detached:
                return
            self._detached = True
            was_active = self._mode is not StreamMode.CLOSED
            tasks = self._take_tasks()
            process, self._process = self._process, None
            self._generation += 1
            self._mode = StreamMode.CLOSED
            if was_active:
                self._emit(TerminalEvent.reset(self._epoch))
                self._emit(TerminalEvent.exit("detached", None, self._epoch))

        await self._cancel_tasks(tasks)
        if process is not None:
            await self._call(process.close)

        if destroy:
            try:
                await self._call(self.executor.destroy, self.target.name)
            except TargetNotFound:
                logger.debug(f"{self.target}: already gone")

        self._queue.put_nowait(_END)
        logger.info(f"Detached from {self.target}")

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def resize(self, cols: int, rows: int) -> int:
        """Apply a new geometry and return the new epoch.

        The pty is resized (tmux redraws through the stream) and, in case the
        signal path is unreliable, the window is resized through the executor
        too. No reset is emitted.
        """
        if cols <= 0 or rows <= 0:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")

        async with self._lock:
            if self._mode is StreamMode.CLOSED:
                logger.debug(f"{self.target}: resize ignored, session closed")
                return self._epoch
            self._epoch += 1
            epoch = self._epoch
            self.cols, self.rows = cols, rows
            # A character split across the boundary would belong to two epochs
            self._assembler.discard()
            self._differ.reset()
            process = self._process
            if process is not None:
                try:
                    process.resize(cols, rows)
                except OSError as e:
                    logger.warning(f"{self.target}: pty resize failed: {e}")

        logger.debug(f"{self.target}: resize to {cols}x{rows}, epoch {epoch}")
        try:
            await self._apply_geometry(cols, rows)
        except TransportError as e:
            # The stream's own tasks report lost sessions and links
            logger.debug(f"{self.target}: explicit resize failed: {e}")
        return epoch

    async def write(self, data: bytes) -> bool:
        """Forward caller input to the session.

        Returns:
            True if the input was delivered; failures are logged, not raised
        """
        if not data:
            return True
        self._last_input = asyncio.get_running_loop().time()

        async with self._write_lock:
            mode = self._mode
            process = self._process
            try:
                if mode is StreamMode.STREAMING and process is not None:
                    process.write(data)
                elif mode is StreamMode.FALLBACK:
                    await self._call(self.executor.send_input, self.target.name, data, True)
                else:
                    logger.debug(f"{self.target}: input dropped in mode {mode.value}")
                    return False
            except (OSError, TransportError) as e:
                error = PartialWriteFailed(
                    f"write to {self.target} failed: {e}",
                    host_id=self.target.host_id or None,
                    session_name=self.target.name,
                    cause=e,
                )
                logger.warning(str(error))
                return False
        return True

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _read_loop(self, process: PtyProcess, generation: int) -> None:
        """Single reader: drain the pty, repair UTF-8 boundaries, emit data."""
        loop = asyncio.get_running_loop()
        error: Exception | None = None

        try:
            while True:
                chunk = await process.read(self.settings.read_size)
                if not chunk:
                    break
                self._last_output = loop.time()
                self._bytes_since_reconcile += len(chunk)
                data = self._assembler.feed(chunk)
                if data:
                    self._emit(TerminalEvent(EventType.DATA, data=data, epoch=self._epoch))
        except OSError as e:
            error = StreamInterrupted(
                f"read from {self.target} failed: {e}",
                host_id=self.target.host_id or None,
                session_name=self.target.name,
                cause=e,
            )

        tail = self._assembler.flush()
        if tail:
            self._emit(TerminalEvent(EventType.DATA, data=tail, epoch=self._epoch))

        if error is None:
            try:
                returncode = await self._call(process.wait, 5)
            except subprocess.TimeoutExpired:
                returncode = None
            error = self.executor.classify_attach_exit(self.target.name, returncode)

        await self._end_stream(generation, error)

    async def _status_loop(self, generation: int) -> None:
        """Poll the alternate-screen flag and report transitions."""
        while True:
            await asyncio.sleep(self.settings.status_interval)
            try:
                alternate = await self._call(self.executor.is_alternate_screen, self.target.name)
            except TargetNotFound:
                return
            except TransportError as e:
                logger.debug(f"{self.target}: status query failed: {e}")
                continue

            if generation != self._generation or alternate == self._alternate_screen:
                continue
            self._alternate_screen = alternate
            if not alternate:
                # Screen content is unrelated after leaving the alternate screen
                self._differ.reset()
            self._emit(
                TerminalEvent(EventType.STATUS_CHANGED, epoch=self._epoch, alternate_screen=alternate)
            )

    async def _idle_loop(self, generation: int) -> None:
        """Recapture scrollback once per burst after output goes quiet."""
        loop = asyncio.get_running_loop()
        settings = self.settings

        while True:
            await asyncio.sleep(settings.idle_check_interval)
            pending = self._bytes_since_reconcile
            if pending == 0 or pending < settings.min_reconcile_bytes:
                continue
            now = loop.time()
            if now - self._last_output < settings.idle_threshold:
                continue
            if self._alternate_screen:
                continue
            if now - self._last_input < settings.input_quiet_period:
                continue

            # Output arriving during the capture counts toward the next one
            self._bytes_since_reconcile = 0
            try:
                history = await self._call(
                    self.executor.capture_scrollback, self.target.name, settings.history_lines
                )
            except TargetNotFound:
                return
            except TransportError as e:
                # Retry on the next idle check
                self._bytes_since_reconcile += pending
                logger.warning(f"{self.target}: reconciliation capture failed: {e}")
                continue

            if generation != self._generation:
                return
            logger.debug(f"{self.target}: reconciling scrollback after {pending} bytes")
            self._emit_snapshot(EventType.RECONCILIATION, history)

    async def _poll_loop(self, generation: int) -> None:
        """Fallback: capture the screen periodically and emit changed lines."""
        loop = asyncio.get_running_loop()
        interval = self.settings.poll_interval(self.executor.is_remote)
        link_errors = 0

        while True:
            try:
                screen = await self._call(self.executor.capture_screen, self.target.name)
            except TargetNotFound as e:
                await self._end_stream(generation, e)
                return
            except LinkUnavailable as e:
                link_errors += 1
                logger.debug(f"{self.target}: poll failed ({link_errors}): {e}")
                if link_errors >= self.settings.max_fallback_errors:
                    await self._end_stream(generation, e)
                    return
            except TransportError as e:
                logger.warning(f"{self.target}: poll failed: {e}")
            else:
                link_errors = 0
                update = self._differ.diff(screen)
                if update:
                    self._last_output = loop.time()
                    self._emit(TerminalEvent(EventType.DATA, data=update.encode(), epoch=self._epoch))

            await asyncio.sleep(interval)


__all__ = ["StreamMode", "TerminalStreamingSession"]
