"""Integration tests: stream a real local tmux session.

Each test runs against its own tmux server (tmux -L) so the user's
sessions are never touched. Skipped when tmux is not installed.
"""

import re
import shutil
import subprocess
import uuid

import pytest

from tests.fakes import EventRecorder
from tmuxlink.local_executor import LocalExecutor
from tmuxlink.streaming.events import EventType
from tmuxlink.streaming.session import StreamMode, TerminalStreamingSession
from tmuxlink.streaming.settings import StreamingSettings
from tmuxlink.tmux_executor import ExecutorConfig, SessionTarget

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("tmux") is None, reason="tmux not installed"),
]

LINE_COUNT = 10000


@pytest.fixture
def executor():
    """LocalExecutor on a private tmux server with a large history limit."""
    socket_name = f"tmuxlink-test-{uuid.uuid4().hex[:8]}"
    executor = LocalExecutor(ExecutorConfig(socket_name=socket_name))
    # Global options need a running server
    executor.create("placeholder", command="sleep 120")
    executor.set_global_option("history-limit", "20000")
    yield executor
    subprocess.run(["tmux", "-L", socket_name, "kill-server"], capture_output=True)


ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


def numbers_in(text: str) -> list[int]:
    text = ESCAPE.sub("", text)
    return [int(line) for line in text.split() if line.isdigit()]


@pytest.mark.asyncio
@pytest.mark.slow
async def test_burst_output_is_reconciled_in_order(executor):
    executor.create("burst", command=f"sh -c 'sleep 2; seq 1 {LINE_COUNT}; sleep 30'")
    settings = StreamingSettings(history_lines=20000, status_interval=5.0)
    session = TerminalStreamingSession(executor, SessionTarget(name="burst"), settings)
    recorder = EventRecorder(session)

    # Wide enough that the burst stays under tmux's output throttling
    await session.start(200, 50)
    assert session.mode is StreamMode.STREAMING

    def reconciled(events):
        return any(
            e.type is EventType.RECONCILIATION and str(LINE_COUNT).encode() in e.data
            for e in events
        )

    try:
        await recorder.wait_for(reconciled, timeout=30.0)
    finally:
        await session.close(destroy=True)

    live = recorder.data()
    assert str(LINE_COUNT).encode() in live

    snapshot = [e for e in recorder.events if e.type is EventType.RECONCILIATION][-1]
    assert numbers_in(snapshot.data.decode()) == list(range(1, LINE_COUNT + 1))


@pytest.mark.asyncio
async def test_input_reaches_session(executor):
    executor.create("echo", command="cat")
    session = TerminalStreamingSession(
        executor, SessionTarget(name="echo"), StreamingSettings(status_interval=5.0)
    )
    recorder = EventRecorder(session)
    await session.start(80, 24)

    try:
        assert await session.write(b"hello-tmuxlink\r") is True
        await recorder.wait_for(
            lambda events: b"hello-tmuxlink" in recorder.data(),
            timeout=10.0,
        )
    finally:
        await session.close(destroy=True)

    await recorder.wait_for(lambda events: recorder.finished)
    assert recorder.events[-1].type is EventType.EXIT
    assert not executor.exists("echo")
