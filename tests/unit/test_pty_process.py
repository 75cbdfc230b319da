"""Unit tests for the pty process wrapper and the interactive attach pump.

These spawn real child processes (sh, cat) on real pseudo-terminals; no tmux
is needed.
"""

import asyncio
import os
import threading

import pytest

from tmuxlink.pty_process import (
    AttachResult,
    DetachScanner,
    PtyProcess,
    get_terminal_size,
    run_interactive,
)


async def read_all(process: PtyProcess, timeout: float = 5.0) -> bytes:
    chunks = []
    while True:
        chunk = await asyncio.wait_for(process.read(), timeout)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


@pytest.fixture
def pipes():
    """(stdin reader, stdin writer fd, stdout writer, stdout reader fd)."""
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    stdin = os.fdopen(in_r, "rb", buffering=0)
    stdout = os.fdopen(out_w, "wb", buffering=0)
    yield stdin, in_w, stdout, out_r
    for f in (stdin, stdout):
        f.close()
    for fd in (in_w, out_r):
        try:
            os.close(fd)
        except OSError:
            pass


class TestDetachScanner:
    """Test detach sequence detection."""

    def test_plain_input_passes_through(self):
        assert DetachScanner().feed(b"ls -la\r") == (b"ls -la\r", False)

    def test_single_byte_sequence(self):
        assert DetachScanner().feed(b"abc\x11def") == (b"abc", True)

    def test_sequence_split_across_reads(self):
        scanner = DetachScanner(b"\x1bq")

        assert scanner.feed(b"ls\x1b") == (b"ls", False)
        assert scanner.feed(b"q") == (b"", True)

    def test_held_prefix_is_released_when_not_matched(self):
        scanner = DetachScanner(b"\x1bq")

        assert scanner.feed(b"\x1b") == (b"", False)
        assert scanner.feed(b"[A") == (b"\x1b[A", False)

    def test_flush_returns_pending(self):
        scanner = DetachScanner(b"\x1bq")
        scanner.feed(b"x\x1b")

        assert scanner.flush() == b"\x1b"
        assert scanner.flush() == b""

    def test_empty_sequence_rejected(self):
        with pytest.raises(ValueError):
            DetachScanner(b"")


class TestPtyProcess:
    """Test spawning, reading, resizing and closing."""

    @pytest.mark.asyncio
    async def test_reads_output_until_exit(self):
        process = PtyProcess.spawn(["sh", "-c", "printf hello; exit 3"])
        try:
            output = await read_all(process)
            assert b"hello" in output
            assert process.wait(timeout=5) == 3
        finally:
            process.close()

    @pytest.mark.asyncio
    async def test_child_sees_terminal_geometry_and_resize(self):
        process = PtyProcess.spawn(["sh", "-c", "stty size; sleep 0.5; stty size"], cols=100, rows=30)
        try:
            await asyncio.sleep(0.2)
            process.resize(120, 40)
            output = await read_all(process)
        finally:
            process.close()

        lines = output.decode().split()
        assert lines[:2] == ["30", "100"]
        assert lines[-2:] == ["40", "120"]

    @pytest.mark.asyncio
    async def test_write_reaches_child(self):
        process = PtyProcess.spawn(["sh", "-c", "read line; printf 'got:%s' \"$line\""])
        try:
            process.write(b"ping\n")
            output = await read_all(process)
        finally:
            process.close()

        assert b"got:ping" in output

    def test_nesting_variables_are_removed(self, monkeypatch):
        monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")

        async def run():
            process = PtyProcess.spawn(["sh", "-c", 'printf "[${TMUX:-unset}] $TERM"'])
            try:
                return await read_all(process)
            finally:
                process.close()

        output = asyncio.run(run())

        assert b"[unset] xterm-256color" in output

    def test_close_terminates_running_child(self):
        process = PtyProcess.spawn(["sleep", "30"])

        process.close()

        assert process.closed
        assert process.returncode is not None
        process.close()  # idempotent

    def test_missing_binary_raises_oserror(self):
        with pytest.raises(OSError):
            PtyProcess.spawn(["/nonexistent/tmux-binary"])

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            PtyProcess.spawn(["true"], cols=0, rows=24)

    def test_terminal_size_of_non_tty(self, pipes):
        stdin, _, _, _ = pipes

        assert get_terminal_size(stdin.fileno()) == (80, 24)


class TestRunInteractive:
    """Test the blocking attach pump with pipes in place of a terminal."""

    def test_detach_keys_stop_the_client_only(self, pipes):
        stdin, in_w, stdout, _ = pipes
        process = PtyProcess.spawn(["cat"])
        os.write(in_w, b"hi\x11ignored")

        result = run_interactive(process, stdin, stdout)

        assert result.reason == "detached"
        assert process.closed

    def test_exit_is_reported_with_returncode(self, pipes):
        stdin, _, stdout, out_r = pipes
        process = PtyProcess.spawn(["sh", "-c", "printf done; exit 4"])

        result = run_interactive(process, stdin, stdout)

        assert result == AttachResult(reason="exited", returncode=4)
        assert b"done" in os.read(out_r, 4096)

    def test_cancel_event(self, pipes):
        stdin, _, stdout, _ = pipes
        process = PtyProcess.spawn(["sleep", "30"])
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()

        result = run_interactive(process, stdin, stdout, cancel=cancel, poll_interval=0.05)

        assert result.reason == "cancelled"
        assert process.closed

    def test_resize_event_from_worker_thread(self, pipes):
        stdin, _, stdout, out_r = pipes
        process = PtyProcess.spawn(["sh", "-c", "sleep 0.6; stty size"], cols=100, rows=30)
        resize = threading.Event()
        results = []
        worker = threading.Thread(
            target=lambda: results.append(
                run_interactive(process, stdin, stdout, resize=resize, poll_interval=0.05)
            )
        )

        worker.start()
        threading.Timer(0.1, resize.set).start()
        worker.join(timeout=10)

        assert results[0].reason == "exited"
        # stdout is a pipe, so the pty takes the default 80x24
        assert os.read(out_r, 4096).split() == [b"24", b"80"]

    def test_worker_thread_without_resize_event(self, pipes):
        stdin, _, stdout, out_r = pipes
        process = PtyProcess.spawn(["sh", "-c", "stty size"], cols=100, rows=30)
        results = []
        worker = threading.Thread(target=lambda: results.append(run_interactive(process, stdin, stdout)))

        worker.start()
        worker.join(timeout=10)

        assert results == [AttachResult(reason="exited", returncode=0)]
        assert os.read(out_r, 4096).split() == [b"30", b"100"]
