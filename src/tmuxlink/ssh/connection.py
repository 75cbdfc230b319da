"""SSH Connection Module - One multiplexed link to one remote host.

Philosophy:
- Wrap the native ssh binary (user's ssh config, agent, jump hosts all work)
- ControlMaster multiplexing: one TCP/auth handshake, many commands
- Liveness is cached; the pool decides when to re-check it
- No credential logging (only key paths ever appear in messages)

Public API (the "studs"):
    SSHHostConfig: Per-host configuration (immutable once registered)
    SSHConnection: Lazily verified, reusable link with liveness tracking
    CommandResult: Output of a remote command
    resolve_host_config: Fill missing fields from ~/.ssh/config
"""

import hashlib
import logging
import os
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path

import paramiko

from tmuxlink.errors import LinkUnavailable

logger = logging.getLogger(__name__)

DEFAULT_SSH_CONFIG = Path.home() / ".ssh" / "config"

# Prepended to every remote command so tmux installed via Homebrew is found
# regardless of the remote login shell.
PATH_PREFIX = "PATH=/opt/homebrew/bin:/usr/local/bin:$PATH"

# ssh reserves exit status 255 for its own errors (connection lost, auth, ...)
SSH_ERROR_EXIT_CODE = 255


@dataclass(frozen=True)
class SSHHostConfig:
    """SSH host configuration.

    Attributes:
        host: Hostname, IP address or ~/.ssh/config alias
        user: SSH username (None = ssh default)
        port: SSH port
        identity_file: Path to private key (optional, ~ expanded)
        jump_host: Jump host passed to ``ssh -J`` (optional)
        tmux_path: tmux binary on the remote host
        connect_timeout: ssh ConnectTimeout in seconds
    """

    host: str
    user: str | None = None
    port: int = 22
    identity_file: str | None = None
    jump_host: str | None = None
    tmux_path: str = "tmux"
    connect_timeout: int = 10

    def __post_init__(self):
        """Validate configuration."""
        if not self.host:
            raise ValueError("SSH host cannot be empty")
        if not (1 <= self.port <= 65535):
            raise ValueError(f"Invalid SSH port: {self.port}")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")

    @property
    def target(self) -> str:
        """ssh target string (user@host or just host)."""
        if self.user:
            return f"{self.user}@{self.host}"
        return self.host


@dataclass
class CommandResult:
    """Result of a command executed over the link."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def resolve_host_config(config: SSHHostConfig, ssh_config_path: Path | None = None) -> SSHHostConfig:
    """Fill empty fields of a host config from the user's ~/.ssh/config.

    Explicit values always win; only user, port (when left at 22), identity
    file and jump host are taken from the matching ``Host`` block.

    Args:
        config: Host configuration as registered
        ssh_config_path: ssh config file (default: ~/.ssh/config)

    Returns:
        A new SSHHostConfig (or the same one if nothing could be resolved)

    Example:
        >>> cfg = resolve_host_config(SSHHostConfig(host="devbox"))
        >>> cfg.user  # from "Host devbox / User alice"
        'alice'
    """
    path = ssh_config_path or DEFAULT_SSH_CONFIG
    if not path.exists():
        return config

    try:
        ssh_config = paramiko.SSHConfig.from_path(str(path))
    except (OSError, paramiko.ssh_exception.ConfigParseError) as e:
        logger.warning(f"Could not parse ssh config {path}: {e}")
        return config

    entry = ssh_config.lookup(config.host)
    updates: dict = {}

    if config.user is None and entry.get("user"):
        updates["user"] = entry["user"]
    if config.port == 22 and entry.get("port"):
        try:
            updates["port"] = int(entry["port"])
        except ValueError:
            logger.warning(f"Ignoring invalid port in ssh config for {config.host}: {entry['port']}")
    if config.identity_file is None and entry.get("identityfile"):
        updates["identity_file"] = entry["identityfile"][0]
    if config.jump_host is None and entry.get("proxyjump"):
        updates["jump_host"] = entry["proxyjump"]

    if not updates:
        return config
    logger.debug(f"Resolved ssh config for {config.host}: {sorted(updates)}")
    return replace(config, **updates)


class SSHConnection:
    """A multiplexed SSH link to one host.

    The link is verified with a lightweight ``echo ok`` probe. The probe result
    is cached: a successful probe younger than the freshness window is reused
    without a round-trip.

    Lock scopes:
        _state_lock: guards _live, _last_error, _last_check (never held during I/O)
        _probe_lock: serializes probes for this host (held during the ssh call)

    Example:
        >>> conn = SSHConnection(SSHHostConfig(host="10.0.0.5", user="dev"))
        >>> conn.probe()
        >>> conn.run_command("tmux ls").stdout
    """

    CONTROL_PERSIST = 300  # seconds the master stays up after the last client

    def __init__(
        self,
        config: SSHHostConfig,
        host_id: str | None = None,
        control_dir: Path | None = None,
    ):
        self.config = config
        self.host_id = host_id or config.host
        self.control_dir = control_dir or Path(tempfile.gettempdir())

        self._state_lock = threading.Lock()
        self._probe_lock = threading.Lock()
        self._live = False
        self._last_error: Exception | None = None
        self._last_check: float | None = None

    @property
    def target(self) -> str:
        return self.config.target

    @property
    def control_path(self) -> Path:
        """ControlMaster socket path.

        Hashed so the path stays below the unix socket length limit.
        """
        key = f"{self.config.user or ''}@{self.config.host}:{self.config.port}"
        digest = hashlib.sha1(key.encode()).hexdigest()[:16]  # noqa: S324 - not security relevant
        return self.control_dir / f"tmuxlink-ssh-{digest}"

    # ------------------------------------------------------------------
    # Liveness state
    # ------------------------------------------------------------------

    def is_live(self) -> bool:
        with self._state_lock:
            return self._live

    @property
    def last_error(self) -> Exception | None:
        with self._state_lock:
            return self._last_error

    @property
    def last_check(self) -> float | None:
        """Wall-clock time of the last probe (or failure report)."""
        with self._state_lock:
            return self._last_check

    def is_fresh(self, window: float) -> bool:
        """True if the connection was checked within the last ``window`` seconds."""
        with self._state_lock:
            if self._last_check is None:
                return False
            return (time.time() - self._last_check) < window

    def _record(self, live: bool, error: Exception | None) -> None:
        with self._state_lock:
            self._live = live
            self._last_error = error
            self._last_check = time.time()

    def mark_unavailable(self, error: Exception) -> None:
        """Mark the link dead after a failure observed outside a probe."""
        logger.warning(f"SSH link to {self.host_id} marked unavailable: {error}")
        self._record(False, error)

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def build_ssh_args(self, tty: bool = False) -> list[str]:
        """Build the ssh argument list (without a remote command).

        Args:
            tty: Force remote PTY allocation (``-t``) for interactive sessions

        Returns:
            ssh command arguments ending with the target
        """
        cfg = self.config
        args = ["ssh"]

        if cfg.jump_host:
            args.extend(["-J", cfg.jump_host])

        if cfg.identity_file:
            args.extend(["-i", str(Path(cfg.identity_file).expanduser())])

        if cfg.port != 22:
            args.extend(["-p", str(cfg.port)])

        args.extend(
            [
                "-o",
                "StrictHostKeyChecking=accept-new",
                "-o",
                "BatchMode=yes",  # Fail immediately instead of prompting
                "-o",
                f"ConnectTimeout={cfg.connect_timeout}",
                "-o",
                "ControlMaster=auto",
                "-o",
                f"ControlPath={self.control_path}",
                "-o",
                f"ControlPersist={self.CONTROL_PERSIST}",
            ]
        )

        if tty:
            args.append("-t")

        args.append(self.target)
        return args

    @staticmethod
    def wrap_command(command: str) -> str:
        """Prefix a remote command with the tool search path."""
        return f"{PATH_PREFIX} {command}"

    def interactive_argv(self, command: str) -> list[str]:
        """Arguments for an interactive (PTY) ssh session running ``command``."""
        return [*self.build_ssh_args(tty=True), self.wrap_command(command)]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def probe(self, freshness_window: float = 0.0) -> None:
        """Verify the link with an ``echo ok`` round-trip.

        Args:
            freshness_window: Skip the round-trip if a successful probe is
                younger than this many seconds

        Raises:
            LinkUnavailable: If the host is unreachable or auth fails
        """
        with self._probe_lock:
            with self._state_lock:
                if (
                    freshness_window > 0
                    and self._live
                    and self._last_check is not None
                    and (time.time() - self._last_check) < freshness_window
                ):
                    return

            args = [*self.build_ssh_args(), "echo", "ok"]
            logger.debug(f"Probing SSH link to {self.host_id}")

            try:
                result = subprocess.run(
                    args,
                    capture_output=True,
                    text=True,
                    stdin=subprocess.DEVNULL,
                    timeout=self.config.connect_timeout + 5,  # subprocess timeout > ssh timeout
                )
            except subprocess.TimeoutExpired as e:
                error = LinkUnavailable(
                    f"SSH probe to {self.host_id} timed out", host_id=self.host_id, cause=e
                )
                self._record(False, error)
                raise error from e
            except FileNotFoundError as e:
                error = LinkUnavailable("ssh binary not found", host_id=self.host_id, cause=e)
                self._record(False, error)
                raise error from e

            if result.returncode != 0 or "ok" not in result.stdout:
                output = (result.stderr or result.stdout).strip()
                error = LinkUnavailable(
                    f"SSH connection to {self.host_id} failed (exit {result.returncode}): {output}",
                    host_id=self.host_id,
                )
                self._record(False, error)
                raise error

            self._record(True, None)
            logger.info(f"SSH link to {self.host_id} ({self.target}) is live")

    def run_command(
        self, command: str, timeout: float | None = 10, input: str | None = None
    ) -> CommandResult:
        """Execute a command on the remote host.

        Non-zero exit codes of the remote command are returned, not raised, so
        callers can classify them. Link-level failures are raised.

        Args:
            command: Shell command (already quoted) to run remotely
            timeout: Round-trip timeout in seconds
            input: Optional text fed to the remote command's stdin

        Returns:
            CommandResult of the remote command

        Raises:
            LinkUnavailable: On timeout or ssh-level failure (exit 255)
        """
        args = [*self.build_ssh_args(), self.wrap_command(command)]
        # Without input, ssh must not inherit our stdin (it would block on it)
        stdin_kwargs = {"input": input} if input is not None else {"stdin": subprocess.DEVNULL}

        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                **stdin_kwargs,
            )
        except subprocess.TimeoutExpired as e:
            error = LinkUnavailable(
                f"Remote command on {self.host_id} timed out after {timeout}s",
                host_id=self.host_id,
                cause=e,
            )
            self.mark_unavailable(error)
            raise error from e
        except FileNotFoundError as e:
            raise LinkUnavailable("ssh binary not found", host_id=self.host_id, cause=e) from e

        if result.returncode == SSH_ERROR_EXIT_CODE:
            error = LinkUnavailable(
                f"SSH link to {self.host_id} failed: {result.stderr.strip()}",
                host_id=self.host_id,
            )
            self.mark_unavailable(error)
            raise error

        return CommandResult(result.returncode, result.stdout, result.stderr)

    def close_control_master(self) -> None:
        """Terminate the ControlMaster process and remove its socket."""
        path = self.control_path
        if not path.exists():
            return

        args = ["ssh", "-O", "exit", "-o", f"ControlPath={path}", self.target]
        try:
            subprocess.run(args, capture_output=True, stdin=subprocess.DEVNULL, timeout=5)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"ssh -O exit for {self.host_id} failed: {e}")

        # ssh normally unlinks the socket itself
        if path.exists():
            try:
                os.unlink(path)
            except OSError as e:
                logger.debug(f"Could not remove control socket {path}: {e}")

    def close(self) -> None:
        """Release the multiplexed transport and mark the link not-live."""
        self.close_control_master()
        with self._state_lock:
            self._live = False
        logger.debug(f"Closed SSH link to {self.host_id}")


__all__ = [
    "PATH_PREFIX",
    "SSH_ERROR_EXIT_CODE",
    "CommandResult",
    "SSHConnection",
    "SSHHostConfig",
    "resolve_host_config",
]
