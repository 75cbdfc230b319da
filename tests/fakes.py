"""Test doubles for tmuxlink tests.

- FakeConnection: SSHConnection whose probe/run_command never touch the network
- FakeAttachProcess: Scripted stand-in for an attach client on a pty
- FakeExecutor: SessionExecutor with canned screen/history and call recording
- EventRecorder: Background consumer of a streaming session's events
"""

import asyncio
import collections
import threading
from collections.abc import Callable

from tmuxlink.errors import LinkUnavailable
from tmuxlink.ssh.connection import CommandResult, SSHConnection, SSHHostConfig
from tmuxlink.streaming.events import EventType, TerminalEvent
from tmuxlink.tmux_executor import ExecutorConfig, SessionExecutor

# ============================================================================
# SSH FAKES
# ============================================================================


class FakeConnection(SSHConnection):
    """SSHConnection with scripted probes and remote commands.

    Attributes:
        reachable: Outcome of the next probe
        probe_count: Number of probe round-trips performed
        commands: Remote commands received by run_command()
        responder: Optional callable(command) -> CommandResult
        probe_gate: Optional event a probe waits on (to simulate a slow host)
    """

    def __init__(self, config: SSHHostConfig, host_id: str | None = None):
        super().__init__(config, host_id=host_id)
        self.reachable = True
        self.probe_count = 0
        self.commands: list[str] = []
        self.responder: Callable[[str], CommandResult] | None = None
        self.probe_gate: threading.Event | None = None
        self.closed = False

    def probe(self, freshness_window: float = 0.0) -> None:
        if self.probe_gate is not None:
            self.probe_gate.wait(timeout=5)
        self.probe_count += 1
        if self.reachable:
            self._record(True, None)
            return
        error = LinkUnavailable(f"SSH connection to {self.host_id} failed", host_id=self.host_id)
        self._record(False, error)
        raise error

    def run_command(self, command, timeout=10, input=None) -> CommandResult:
        self.commands.append(command)
        if self.responder is not None:
            return self.responder(command)
        if "display-message" in command:
            return CommandResult(0, "0\n", "")
        return CommandResult(0, "remote screen\n", "")

    def close_control_master(self) -> None:
        self.closed = True


# ============================================================================
# ATTACH PROCESS AND EXECUTOR FAKES
# ============================================================================


class FakeAttachProcess:
    """Scripted attach client: feed() queues output, finish() ends it."""

    def __init__(self, initial: bytes = b""):
        self._chunks: collections.deque[bytes] = collections.deque()
        if initial:
            self._chunks.append(initial)
        self._returncode: int | None = None
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.closed = False
        self.write_error: OSError | None = None

    def feed(self, data: bytes) -> None:
        self._chunks.append(data)

    def finish(self, returncode: int = 0) -> None:
        self._returncode = returncode
        self._chunks.append(b"")

    async def read(self, size: int = 65536) -> bytes:
        while not self._chunks:
            if self.closed:
                return b""
            await asyncio.sleep(0.005)
        return self._chunks.popleft()

    def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    def wait(self, timeout: float | None = None) -> int | None:
        return self._returncode

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def close(self, timeout: float = 2.0) -> None:
        self.closed = True


class FakeExecutor(SessionExecutor):
    """Executor with canned tmux answers; records the order of operations."""

    def __init__(self, host_id: str = "", screen: str = "$ \n", history: str = "one\ntwo\n$ \n"):
        super().__init__(ExecutorConfig(host_id=host_id))
        self.screen = screen
        self.history = history
        self.alternate = False
        self.calls: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.sent: list[str | bytes] = []
        self.destroyed: list[str] = []
        self.processes: list[FakeAttachProcess] = []
        self.initial_output = b""
        self.attach_error: Exception | None = None
        self.capture_error: Exception | None = None
        self.scrollback_errors: list[Exception] = []
        self.capture_delay = 0.0
        self._calls_lock = threading.Lock()

    def _record(self, name: str) -> None:
        with self._calls_lock:
            self.calls.append(name)

    @property
    def process(self) -> FakeAttachProcess:
        return self.processes[-1]

    def _run_tmux(self, args, timeout=None, input=None):
        raise AssertionError(f"unexpected raw tmux call: {args}")

    def attach_argv(self, name: str) -> list[str]:
        return ["tmux", "attach-session", "-t", name]

    def resize_window(self, name: str, cols: int, rows: int) -> None:
        self._record("resize_window")
        self.resizes.append((cols, rows))

    def capture_screen(self, name: str, escapes: bool = True) -> str:
        self._record("capture_screen")
        if self.capture_delay:
            threading.Event().wait(self.capture_delay)
        if self.capture_error is not None:
            raise self.capture_error
        return self.screen

    def capture_scrollback(self, name: str, lines: int, escapes: bool = True) -> str:
        self._record("capture_scrollback")
        if self.scrollback_errors:
            raise self.scrollback_errors.pop(0)
        return self.history

    def is_alternate_screen(self, name: str) -> bool:
        return self.alternate

    def spawn_attach(self, name: str, cols: int = 80, rows: int = 24) -> FakeAttachProcess:
        self._record("spawn_attach")
        if self.attach_error is not None:
            raise self.attach_error
        process = FakeAttachProcess(self.initial_output)
        self.processes.append(process)
        return process

    def send_input(self, name: str, data, literal: bool = True) -> None:
        self.sent.append(data)

    def destroy(self, name: str) -> None:
        self.destroyed.append(name)


# ============================================================================
# EVENT RECORDER
# ============================================================================


class EventRecorder:
    """Consume a session's events in the background for later assertions."""

    def __init__(self, session):
        self.events: list[TerminalEvent] = []
        self.finished = False
        self._task = asyncio.create_task(self._consume(session))

    async def _consume(self, session) -> None:
        async for event in session.events():
            self.events.append(event)
        self.finished = True

    def of_type(self, event_type: EventType) -> list[TerminalEvent]:
        return [e for e in self.events if e.type is event_type]

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]

    def data(self) -> bytes:
        return b"".join(e.data for e in self.of_type(EventType.DATA))

    async def wait_for(self, predicate: Callable[[list[TerminalEvent]], bool], timeout: float = 3.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate(self.events):
            if loop.time() > deadline:
                raise AssertionError(f"timed out waiting for events, got {self.types()}")
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
