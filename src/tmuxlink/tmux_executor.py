"""Session executor interface - tmux operations independent of locality.

Philosophy:
- Every tmux operation is written once, against _run_tmux()
- Locality (local process vs. pooled SSH link) is a construction-time choice
- Failures are typed: "session is gone" vs. "host is gone" vs. "tmux failed"
- All round-trips are bounded by a command timeout

Public API (the "studs"):
    SessionExecutor: Abstract executor; subclasses provide _run_tmux/attach_argv
    ExecutorConfig: Per-executor configuration (immutable)
    SessionTarget: Reference to one tmux session (name, work dir, host)
    SessionInfo: Session row returned by list_sessions_with_info()
"""

import logging
import re
import shlex
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO

from tmuxlink.errors import (
    AttachFailed,
    StreamInterrupted,
    TargetNotFound,
    TransportError,
    classify_tmux_error,
)
from tmuxlink.pty_process import (
    DEFAULT_DETACH_KEYS,
    AttachResult,
    PtyProcess,
    get_terminal_size,
    run_interactive,
)
from tmuxlink.ssh.connection import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 10.0

# tmux uses ':' and '.' as target separators
_INVALID_NAME_CHARS = re.compile(r"[:.\s]")


def validate_session_name(name: str) -> str:
    """Validate a tmux session name.

    Raises:
        ValueError: If the name is empty or contains target separators
    """
    if not name:
        raise ValueError("Session name cannot be empty")
    if _INVALID_NAME_CHARS.search(name):
        raise ValueError(f"Invalid session name (no ':', '.' or whitespace): {name!r}")
    return name


@dataclass(frozen=True)
class ExecutorConfig:
    """Executor configuration.

    Attributes:
        host_id: Remote host identifier ("" = local)
        tmux_path: tmux binary (remote override for SSH executors)
        command_timeout: Timeout for each tmux round-trip in seconds
        socket_name: tmux server socket name (tmux -L), None = default server
    """

    host_id: str = ""
    tmux_path: str = "tmux"
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    socket_name: str | None = None

    def __post_init__(self):
        """Validate configuration."""
        if not self.tmux_path:
            raise ValueError("tmux_path cannot be empty")
        if self.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")


@dataclass(frozen=True)
class SessionTarget:
    """What the session registry hands over at attach time."""

    name: str
    work_dir: str | None = None
    host_id: str = ""

    def __post_init__(self):
        validate_session_name(self.name)

    @property
    def is_remote(self) -> bool:
        return bool(self.host_id)

    def __str__(self) -> str:
        return f"{self.host_id}:{self.name}" if self.host_id else self.name


@dataclass
class SessionInfo:
    """One row of list_sessions_with_info()."""

    name: str
    work_dir: str
    activity: int


class SessionExecutor(ABC):
    """tmux session operations with a uniform surface for every locality.

    Subclasses implement two primitives:
        _run_tmux(args, timeout, input) -> CommandResult
        attach_argv(name) -> argv for an interactive attach client

    Everything else (lifecycle, input, capture, options, environment, output
    logging, attach) is built here once.
    """

    def __init__(self, config: ExecutorConfig | None = None):
        self.config = config or ExecutorConfig()
        # session name -> active pipe-pane sink path
        self._log_sinks: dict[str, str] = {}
        self._log_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Locality
    # ------------------------------------------------------------------

    @property
    def host_id(self) -> str:
        return self.config.host_id

    @property
    def is_remote(self) -> bool:
        return bool(self.config.host_id)

    @property
    def label(self) -> str:
        return self.config.host_id or "local"

    @abstractmethod
    def _run_tmux(
        self, args: list[str], timeout: float | None = None, input: str | None = None
    ) -> CommandResult:
        """Run ``tmux <args>`` and return its result.

        Non-zero tmux exit codes are returned, not raised. Transport failures
        raise (LinkUnavailable for remote links, CommandFailed locally).
        """

    @abstractmethod
    def attach_argv(self, name: str) -> list[str]:
        """Command line for an interactive client attached to ``name``."""

    def tmux_argv(self, args: list[str]) -> list[str]:
        """Full tmux argument vector, including the server socket if configured."""
        argv = [self.config.tmux_path]
        if self.config.socket_name:
            argv.extend(["-L", self.config.socket_name])
        return [*argv, *args]

    def tmux_command(self, args: list[str]) -> str:
        """Shell-quoted tmux invocation (used by remote executors)."""
        return shlex.join(self.tmux_argv(args))

    def _tmux(
        self,
        args: list[str],
        *,
        session_name: str | None = None,
        timeout: float | None = None,
        input: str | None = None,
    ) -> str:
        result = self._run_tmux(args, timeout=timeout or self.config.command_timeout, input=input)
        if result.returncode != 0:
            raise classify_tmux_error(
                result.stderr,
                result.returncode,
                command=args[0],
                host_id=self.host_id or None,
                session_name=session_name,
            )
        return result.stdout

    # Hooks for executors that cache session existence
    def _session_created(self, name: str) -> None:
        pass

    def _session_destroyed(self, name: str) -> None:
        pass

    def _sessions_listed(self, names: set[str]) -> None:
        pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, name: str, work_dir: str | None = None, command: str | None = None) -> None:
        """Create a detached session.

        Raises:
            AlreadyExists: If a session with this name exists
        """
        validate_session_name(name)
        args = ["new-session", "-d", "-s", name]
        if work_dir:
            args.extend(["-c", work_dir])
        if command:
            args.append(command)

        self._tmux(args, session_name=name)
        self._session_created(name)
        logger.info(f"Created tmux session {name} on {self.label}")

    def destroy(self, name: str) -> None:
        """Kill a session.

        Raises:
            TargetNotFound: If the session does not exist
        """
        try:
            self._tmux(["kill-session", "-t", name], session_name=name)
        finally:
            self._session_destroyed(name)
            with self._log_lock:
                self._log_sinks.pop(name, None)
        logger.info(f"Destroyed tmux session {name} on {self.label}")

    def exists(self, name: str) -> bool:
        """Check whether a session exists."""
        result = self._run_tmux(["has-session", "-t", name], timeout=self.config.command_timeout)
        if result.returncode == 0:
            return True
        error = classify_tmux_error(
            result.stderr,
            result.returncode,
            command="has-session",
            host_id=self.host_id or None,
            session_name=name,
        )
        if isinstance(error, TargetNotFound) or not result.stderr.strip():
            return False
        raise error

    def list_all(self) -> dict[str, int]:
        """Map every session to its most recent window activity timestamp."""
        args = ["list-windows", "-a", "-F", "#{session_name}\t#{window_activity}"]
        try:
            output = self._tmux(args)
        except TargetNotFound:
            # No server running means no sessions
            self._sessions_listed(set())
            return {}

        sessions: dict[str, int] = {}
        for line in output.splitlines():
            name, _, activity = line.partition("\t")
            if not name:
                continue
            try:
                stamp = int(activity)
            except ValueError:
                stamp = 0
            sessions[name] = max(stamp, sessions.get(name, 0))

        self._sessions_listed(set(sessions))
        return sessions

    def list_sessions_with_info(self) -> list[SessionInfo]:
        """List sessions with working directory and activity."""
        args = ["list-sessions", "-F", "#{session_name}\t#{session_path}\t#{session_activity}"]
        try:
            output = self._tmux(args)
        except TargetNotFound:
            self._sessions_listed(set())
            return []

        infos = []
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) < 3 or not parts[0]:
                continue
            try:
                activity = int(parts[2])
            except ValueError:
                activity = 0
            infos.append(SessionInfo(name=parts[0], work_dir=parts[1], activity=activity))

        self._sessions_listed({info.name for info in infos})
        return infos

    # ------------------------------------------------------------------
    # Input and capture
    # ------------------------------------------------------------------

    def send_input(self, name: str, data: str | bytes, literal: bool = True) -> None:
        """Send input to a session.

        Args:
            name: Session name
            data: Text to type, or space-separated key names when not literal
            literal: Send bytes as-is (``send-keys -l``); otherwise tmux key
                names such as ``C-c`` or ``Enter`` are interpreted
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        if not data:
            return

        if literal:
            args = ["send-keys", "-t", name, "-l", "--", data]
        else:
            args = ["send-keys", "-t", name, *data.split()]
        self._tmux(args, session_name=name)

    def capture_screen(self, name: str, escapes: bool = True) -> str:
        """Capture the visible screen (wrapped lines joined)."""
        args = ["capture-pane", "-t", name, "-p", "-J"]
        if escapes:
            args.append("-e")
        return self._tmux(args, session_name=name)

    def capture_scrollback(self, name: str, lines: int, escapes: bool = True) -> str:
        """Capture up to ``lines`` of history plus the visible screen."""
        if lines < 0:
            raise ValueError("lines cannot be negative")
        args = ["capture-pane", "-t", name, "-p", "-J", "-S", f"-{lines}"]
        if escapes:
            args.append("-e")
        return self._tmux(args, session_name=name)

    # ------------------------------------------------------------------
    # Options, environment, pane control
    # ------------------------------------------------------------------

    def set_option(self, name: str, option: str, value: str) -> None:
        self._tmux(["set-option", "-t", name, option, value], session_name=name)

    def set_server_option(self, option: str, value: str, append: bool = False) -> None:
        """Set a server option (``append`` adds to array options such as terminal-overrides)."""
        flags = "-as" if append else "-s"
        self._tmux(["set-option", flags, option, value])

    def set_global_option(self, option: str, value: str) -> None:
        """Set a global session option (inherited by sessions created afterwards)."""
        self._tmux(["set-option", "-g", option, value])

    def get_environment(self, name: str, key: str) -> str | None:
        """Read a session environment variable (None if unset or removed)."""
        result = self._run_tmux(
            ["show-environment", "-t", name, key], timeout=self.config.command_timeout
        )
        if result.returncode != 0:
            if "unknown variable" in result.stderr.lower():
                return None
            raise classify_tmux_error(
                result.stderr,
                result.returncode,
                command="show-environment",
                host_id=self.host_id or None,
                session_name=name,
            )

        line = result.stdout.strip()
        if line.startswith("-"):
            return None
        _, sep, value = line.partition("=")
        return value if sep else None

    def set_environment(self, name: str, key: str, value: str) -> None:
        self._tmux(["set-environment", "-t", name, key, value], session_name=name)

    def display_message(self, name: str, fmt: str) -> str:
        """Expand a tmux format string in the context of a session."""
        output = self._tmux(["display-message", "-t", name, "-p", fmt], session_name=name)
        return output.rstrip("\n")

    def is_alternate_screen(self, name: str) -> bool:
        return self.display_message(name, "#{alternate_on}") == "1"

    def respawn_pane(self, name: str, command: str | None = None) -> None:
        """Restart the pane's process (kills the running one)."""
        args = ["respawn-pane", "-k", "-t", name]
        if command:
            args.append(command)
        self._tmux(args, session_name=name)

    def resize_window(self, name: str, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            raise ValueError(f"Invalid window size {cols}x{rows}")
        self._tmux(
            ["resize-window", "-t", name, "-x", str(cols), "-y", str(rows)], session_name=name
        )

    # ------------------------------------------------------------------
    # Output logging
    # ------------------------------------------------------------------

    def enable_output_logging(self, name: str, path: str) -> None:
        """Append the pane's raw output to ``path``.

        Idempotent: a session already piping to ``path`` is left alone, and a
        session piping elsewhere is switched over (pipe-pane without -o
        replaces the existing pipe, so there is never more than one sink).
        """
        with self._log_lock:
            active = self.display_message(name, "#{pane_pipe}") == "1"
            if active and self._log_sinks.get(name) == path:
                logger.debug(f"Output logging for {name} already enabled: {path}")
                return

            self._tmux(["pipe-pane", "-t", name, f"cat >> {shlex.quote(path)}"], session_name=name)
            self._log_sinks[name] = path
        logger.info(f"Logging output of {name} to {path}")

    def disable_output_logging(self, name: str) -> None:
        with self._log_lock:
            self._tmux(["pipe-pane", "-t", name], session_name=name)
            self._log_sinks.pop(name, None)

    def output_log_path(self, name: str) -> str | None:
        with self._log_lock:
            return self._log_sinks.get(name)

    # ------------------------------------------------------------------
    # Attach
    # ------------------------------------------------------------------

    def spawn_attach(self, name: str, cols: int = 80, rows: int = 24) -> PtyProcess:
        """Start an attach client for ``name`` on a new pty.

        Raises:
            AttachFailed: If the pty or the client process cannot be started
        """
        argv = self.attach_argv(name)
        try:
            return PtyProcess.spawn(argv, cols=cols, rows=rows)
        except OSError as e:
            raise AttachFailed(
                f"Cannot start attach client for {name} on {self.label}: {e}",
                host_id=self.host_id or None,
                session_name=name,
                cause=e,
            ) from e

    def classify_attach_exit(self, name: str, returncode: int | None) -> TransportError | None:
        """Map the attach client's exit status to an error (None = clean exit)."""
        if not returncode:
            return None
        return StreamInterrupted(
            f"Attach client for {name} on {self.label} exited with status {returncode}",
            host_id=self.host_id or None,
            session_name=name,
        )

    def interactive_attach(
        self,
        name: str,
        stdin: BinaryIO,
        stdout: BinaryIO,
        stderr: BinaryIO | None = None,
        *,
        cancel: threading.Event | None = None,
        detach_keys: bytes | None = DEFAULT_DETACH_KEYS,
        resize: threading.Event | None = None,
    ) -> AttachResult:
        """Attach the caller's streams to a session until detach, cancel or exit.

        Detaching or cancelling stops the attach client only; the session
        keeps running.

        Terminal resizes are picked up from SIGWINCH only when this is called
        on the main thread. Callers on another thread should pass ``resize``
        and set it whenever the window size changes; the client is then
        resized to stdout's size.

        Raises:
            TargetNotFound: If the session does not exist
            AttachFailed: If the attach client cannot be started
            TransportError: If the client exits abnormally
        """
        if not self.exists(name):
            raise TargetNotFound(
                f"tmux session '{name}' not found on {self.label}",
                host_id=self.host_id or None,
                session_name=name,
            )

        cols, rows = get_terminal_size(stdout.fileno())
        process = self.spawn_attach(name, cols=cols, rows=rows)
        logger.info(f"Attached to {name} on {self.label} ({cols}x{rows})")

        result = run_interactive(
            process, stdin, stdout, cancel=cancel, detach_keys=detach_keys, resize=resize
        )

        if result.reason == "exited":
            error = self.classify_attach_exit(name, result.returncode)
            if error is not None:
                if stderr is not None:
                    stderr.write(f"{error}\n".encode())
                    stderr.flush()
                raise error
        return result


__all__ = [
    "DEFAULT_COMMAND_TIMEOUT",
    "ExecutorConfig",
    "SessionExecutor",
    "SessionInfo",
    "SessionTarget",
    "validate_session_name",
]
