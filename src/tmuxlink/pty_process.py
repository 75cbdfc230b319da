"""Pseudo-terminal process wrapper for tmux attach clients.

Philosophy:
- A tmux attach client is just a child process on the slave side of a pty
- Closing the wrapper kills the attach client, never the tmux session
- Geometry changes go through TIOCSWINSZ so the kernel delivers SIGWINCH
- Detach sequences are scanned on the input side only

Public API (the "studs"):
    PtyProcess: Child process running on a fresh pseudo-terminal
    DetachScanner: Detects a detach byte sequence split across reads
    AttachResult: Outcome of run_interactive()
    run_interactive: Blocking bidirectional pump between streams and a PtyProcess
    get_terminal_size: (cols, rows) of a terminal file descriptor
"""

import asyncio
import errno
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import termios
import threading
import tty
from dataclasses import dataclass
from typing import BinaryIO

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 65536
DEFAULT_DETACH_KEYS = b"\x11"  # Ctrl+Q

# Removed from the child environment so tmux agrees to attach from inside tmux
_NESTING_VARS = ("TMUX", "TMUX_PANE")


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(): adopt the pty slave (fd 0) as the
    # controlling terminal so SIGWINCH reaches the foreground process group.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def get_terminal_size(fd: int, default: tuple[int, int] = (80, 24)) -> tuple[int, int]:
    """Return (cols, rows) for a terminal fd, or the default if it is not a tty."""
    try:
        size = os.get_terminal_size(fd)
    except OSError:
        return default
    return size.columns, size.lines


class PtyProcess:
    """A child process attached to the slave side of a new pseudo-terminal.

    The master side is non-blocking. ``read()`` is a coroutine for the asyncio
    streaming engine; ``read_nowait()`` serves the selector-based interactive
    loop.

    Example:
        >>> proc = PtyProcess.spawn(["tmux", "attach-session", "-t", "dev"], cols=120, rows=40)
        >>> data = await proc.read()
        >>> proc.resize(100, 30)
        >>> proc.close()
    """

    def __init__(self, process: subprocess.Popen, master_fd: int, argv: list[str]):
        self.process = process
        self.master_fd = master_fd
        self.argv = argv
        self._closed = False

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        cols: int = 80,
        rows: int = 24,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> "PtyProcess":
        """Start ``argv`` on a new pty with the given geometry.

        Raises:
            OSError: If the pty cannot be allocated or the command cannot start
        """
        if cols <= 0 or rows <= 0:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, cols, rows)

            child_env = os.environ.copy()
            for name in _NESTING_VARS:
                child_env.pop(name, None)
            child_env["TERM"] = "xterm-256color"
            child_env["COLORTERM"] = "truecolor"
            if env:
                child_env.update(env)

            process = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=child_env,
                cwd=cwd,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,  # noqa: PLW1509
                close_fds=True,
            )
        except OSError:
            os.close(master_fd)
            os.close(slave_fd)
            raise

        # Only the child needs the slave end
        os.close(slave_fd)
        os.set_blocking(master_fd, False)

        logger.debug(f"Spawned pty process {process.pid}: {argv}")
        return cls(process, master_fd, argv)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        return self.master_fd

    def read_nowait(self, size: int = DEFAULT_READ_SIZE) -> bytes | None:
        """Read available output.

        Returns:
            Bytes read, b"" at end of stream, None if nothing is available yet
        """
        try:
            return os.read(self.master_fd, size)
        except BlockingIOError:
            return None
        except OSError as e:
            # Linux reports EIO on the master once the slave side is gone
            if e.errno == errno.EIO:
                return b""
            raise

    async def read(self, size: int = DEFAULT_READ_SIZE) -> bytes:
        """Wait for and return the next chunk of output (b"" at end of stream)."""
        loop = asyncio.get_running_loop()
        while True:
            data = self.read_nowait(size)
            if data is not None:
                return data

            ready = loop.create_future()

            def _wake(future: asyncio.Future = ready) -> None:
                if not future.done():
                    future.set_result(None)

            loop.add_reader(self.master_fd, _wake)
            try:
                await ready
            finally:
                loop.remove_reader(self.master_fd)

    def write(self, data: bytes) -> None:
        """Write all of ``data`` to the pty (blocks briefly if the pty is full)."""
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.master_fd, view)
            except BlockingIOError:
                selector = selectors.DefaultSelector()
                try:
                    selector.register(self.master_fd, selectors.EVENT_WRITE)
                    if not selector.select(timeout=5.0):
                        raise TimeoutError("pty write stalled") from None
                finally:
                    selector.close()
                continue
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        """Apply a new geometry; the kernel signals SIGWINCH to the child."""
        if cols <= 0 or rows <= 0:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        _set_winsize(self.master_fd, cols, rows)

    def wait(self, timeout: float | None = None) -> int:
        return self.process.wait(timeout=timeout)

    def close(self, timeout: float = 2.0) -> None:
        """Stop the attach client and release the pty master."""
        if self._closed:
            return
        self._closed = True

        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"pty process {self.pid} ignored SIGTERM, killing")
                self.process.kill()
                self.process.wait()

        try:
            os.close(self.master_fd)
        except OSError as e:
            logger.debug(f"Closing pty master failed: {e}")


class DetachScanner:
    """Finds a detach byte sequence in input, even when split across reads.

    Bytes that could be the start of the sequence are held back until the
    next chunk decides them.

    Example:
        >>> scanner = DetachScanner(b"\\x1bq")
        >>> scanner.feed(b"ls\\x1b")
        (b'ls', False)
        >>> scanner.feed(b"q")
        (b'', True)
    """

    def __init__(self, sequence: bytes = DEFAULT_DETACH_KEYS):
        if not sequence:
            raise ValueError("Detach sequence cannot be empty")
        self.sequence = sequence
        self._pending = b""

    def feed(self, data: bytes) -> tuple[bytes, bool]:
        """Scan a chunk of input.

        Returns:
            (bytes to forward, detach requested)
        """
        buf = self._pending + data
        index = buf.find(self.sequence)
        if index >= 0:
            self._pending = b""
            return buf[:index], True

        keep = 0
        for size in range(min(len(self.sequence) - 1, len(buf)), 0, -1):
            if buf.endswith(self.sequence[:size]):
                keep = size
                break

        self._pending = buf[len(buf) - keep :]
        return buf[: len(buf) - keep], False

    def flush(self) -> bytes:
        pending, self._pending = self._pending, b""
        return pending


@dataclass
class AttachResult:
    """Outcome of an interactive attach.

    Attributes:
        reason: "detached" (detach keys), "cancelled" (cancel event) or "exited"
        returncode: Exit status of the attach client, if it has exited
    """

    reason: str
    returncode: int | None = None


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        view = view[os.write(fd, view) :]


def run_interactive(
    process: PtyProcess,
    stdin: BinaryIO,
    stdout: BinaryIO,
    *,
    cancel: threading.Event | None = None,
    detach_keys: bytes | None = DEFAULT_DETACH_KEYS,
    poll_interval: float = 0.1,
    resize: threading.Event | None = None,
) -> AttachResult:
    """Pump bytes between the caller's streams and an attached pty until it ends.

    Input is forwarded after detach-sequence scanning; output is copied
    verbatim. When stdin is a terminal it is switched to raw mode for the
    duration of the call.

    Window size changes reach the pty in one of two ways. Without ``resize``,
    a SIGWINCH handler is installed, but only when stdout is a terminal and
    this runs on the main thread. Python delivers signals to the main thread
    only, so a caller on a worker thread must pass ``resize`` and set it from
    its own SIGWINCH handler (or any other size source). Each time it is set,
    the pty is resized to stdout's current size.

    Args:
        process: Attached pty process
        stdin: Binary input stream (must have fileno())
        stdout: Binary output stream (must have fileno())
        cancel: Event that ends the call cooperatively when set
        detach_keys: Byte sequence that detaches (None disables)
        poll_interval: Seconds between cancellation checks
        resize: Event the caller sets when the window size changed

    Returns:
        AttachResult describing why the call returned
    """
    stdin_fd = stdin.fileno()
    stdout_fd = stdout.fileno()
    scanner = DetachScanner(detach_keys) if detach_keys else None

    saved_attrs = None
    if os.isatty(stdin_fd):
        saved_attrs = termios.tcgetattr(stdin_fd)
        tty.setraw(stdin_fd)

    resize_pending = resize if resize is not None else threading.Event()
    previous_handler = None
    track_size = (
        resize is None
        and os.isatty(stdout_fd)
        and threading.current_thread() is threading.main_thread()
    )
    if resize is None and not track_size and os.isatty(stdout_fd):
        logger.debug("Not on the main thread; window size changes are not propagated")
    if track_size:
        previous_handler = signal.signal(signal.SIGWINCH, lambda signum, frame: resize_pending.set())
        resize_pending.set()

    selector = selectors.DefaultSelector()
    selector.register(process.master_fd, selectors.EVENT_READ, "pty")
    selector.register(stdin_fd, selectors.EVENT_READ, "stdin")

    reason = None
    try:
        while reason is None:
            if cancel is not None and cancel.is_set():
                reason = "cancelled"
                break

            if resize_pending.is_set():
                resize_pending.clear()
                cols, rows = get_terminal_size(stdout_fd)
                process.resize(cols, rows)

            for key, _ in selector.select(poll_interval):
                if key.data == "pty":
                    data = process.read_nowait()
                    if data is None:
                        continue
                    if not data:
                        reason = "exited"
                        break
                    _write_all(stdout_fd, data)
                else:
                    data = os.read(stdin_fd, 4096)
                    if not data:
                        # Caller closed its input; keep showing output
                        selector.unregister(stdin_fd)
                        continue
                    detached = False
                    if scanner is not None:
                        data, detached = scanner.feed(data)
                    if data:
                        process.write(data)
                    if detached:
                        reason = "detached"
                        break
    finally:
        selector.close()
        if track_size:
            signal.signal(signal.SIGWINCH, previous_handler)
        if saved_attrs is not None:
            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)

    if reason == "exited":
        returncode = process.wait(timeout=5)
        process.close()
    else:
        process.close()
        returncode = process.returncode

    logger.debug(f"Interactive attach ended: {reason} (exit {returncode})")
    return AttachResult(reason=reason, returncode=returncode)


__all__ = [
    "DEFAULT_DETACH_KEYS",
    "AttachResult",
    "DetachScanner",
    "PtyProcess",
    "get_terminal_size",
    "run_interactive",
]
