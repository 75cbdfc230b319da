"""Remote session executor - runs tmux over a pooled SSH link.

Philosophy:
- Same surface as LocalExecutor; only _run_tmux and attach_argv differ
- Every tmux invocation is shell-quoted and prefixed with the tool PATH
- Link failures are reported to the pool, which re-probes lazily
- Existence checks hit a short-TTL per-host cache before the network

Public API (the "studs"):
    SSHExecutor: SessionExecutor backed by a ConnectionPool entry
    RemoteSessionCache: Per-host TTL cache of session names
    shared_session_cache: Process-wide cache used by default
"""

import logging
import threading
import time
from collections.abc import Callable

from tmuxlink.errors import ConnectionUnavailable, LinkUnavailable, TransportError
from tmuxlink.ssh.connection import SSH_ERROR_EXIT_CODE, CommandResult, SSHConnection
from tmuxlink.ssh.connection_pool import ConnectionPool
from tmuxlink.tmux_executor import DEFAULT_COMMAND_TIMEOUT, ExecutorConfig, SessionExecutor

logger = logging.getLogger(__name__)

SESSION_CACHE_TTL = 60.0  # seconds


class RemoteSessionCache:
    """Session names per host, trusted for ``ttl`` seconds after a full listing.

    Example:
        >>> cache = RemoteSessionCache(ttl=60)
        >>> cache.update("build", {"dev", "ci"})
        >>> cache.lookup("build", "dev")
        True
        >>> cache.lookup("other", "dev") is None
        True
    """

    def __init__(self, ttl: float = SESSION_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[set[str], float]] = {}

    def update(self, host_id: str, names: set[str]) -> None:
        """Replace a host's session set after a full listing."""
        with self._lock:
            self._entries[host_id] = (set(names), self._clock())

    def lookup(self, host_id: str, name: str) -> bool | None:
        """Return cached existence, or None if the host's entry is missing or stale."""
        with self._lock:
            entry = self._entries.get(host_id)
            if entry is None:
                return None
            names, stamp = entry
            if self._clock() - stamp > self.ttl:
                del self._entries[host_id]
                return None
            return name in names

    def add(self, host_id: str, name: str) -> None:
        with self._lock:
            entry = self._entries.get(host_id)
            if entry is not None:
                entry[0].add(name)

    def discard(self, host_id: str, name: str) -> None:
        with self._lock:
            entry = self._entries.get(host_id)
            if entry is not None:
                entry[0].discard(name)

    def invalidate(self, host_id: str | None = None) -> None:
        """Forget one host (or every host when host_id is None)."""
        with self._lock:
            if host_id is None:
                self._entries.clear()
            else:
                self._entries.pop(host_id, None)


shared_session_cache = RemoteSessionCache()


class SSHExecutor(SessionExecutor):
    """Execute tmux commands on a remote host through a ConnectionPool.

    Example:
        >>> pool = ConnectionPool()
        >>> pool.register("build", SSHHostConfig(host="10.0.0.5", user="dev"))
        >>> executor = SSHExecutor.from_pool(pool, "build")
        >>> executor.list_all()
        {'dev': 1718000000}
    """

    def __init__(
        self,
        pool: ConnectionPool,
        config: ExecutorConfig,
        session_cache: RemoteSessionCache | None = None,
    ):
        if not config.host_id:
            raise ValueError("SSHExecutor requires a host_id")
        super().__init__(config)
        self.pool = pool
        self.session_cache = session_cache if session_cache is not None else shared_session_cache

    @classmethod
    def from_pool(
        cls,
        pool: ConnectionPool,
        host_id: str,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        session_cache: RemoteSessionCache | None = None,
    ) -> "SSHExecutor":
        """Build an executor for a registered host, using its tmux path.

        Raises:
            ConnectionUnavailable: If the host is not registered
        """
        host_config = pool.get_config(host_id)
        if host_config is None:
            raise ConnectionUnavailable(f"Host '{host_id}' is not registered", host_id=host_id)
        config = ExecutorConfig(
            host_id=host_id, tmux_path=host_config.tmux_path, command_timeout=command_timeout
        )
        return cls(pool, config, session_cache=session_cache)

    def _connection(self) -> SSHConnection:
        return self.pool.get(self.host_id)

    def _run_tmux(
        self, args: list[str], timeout: float | None = None, input: str | None = None
    ) -> CommandResult:
        conn = self._connection()
        command = self.tmux_command(args)
        logger.debug(f"Running on {self.host_id}: {command}")
        return conn.run_command(command, timeout=timeout or self.config.command_timeout, input=input)

    def attach_argv(self, name: str) -> list[str]:
        conn = self._connection()
        return conn.interactive_argv(self.tmux_command(["attach-session", "-t", name]))

    def exists(self, name: str) -> bool:
        cached = self.session_cache.lookup(self.host_id, name)
        if cached is not None:
            return cached
        return super().exists(name)

    def classify_attach_exit(self, name: str, returncode: int | None) -> TransportError | None:
        if returncode == SSH_ERROR_EXIT_CODE:
            error = LinkUnavailable(
                f"SSH link to {self.host_id} dropped while attached to {name}",
                host_id=self.host_id,
                session_name=name,
            )
            self.pool.mark_unavailable(self.host_id, error)
            return error
        return super().classify_attach_exit(name, returncode)

    def _session_created(self, name: str) -> None:
        self.session_cache.add(self.host_id, name)

    def _session_destroyed(self, name: str) -> None:
        self.session_cache.discard(self.host_id, name)

    def _sessions_listed(self, names: set[str]) -> None:
        self.session_cache.update(self.host_id, names)


__all__ = [
    "SESSION_CACHE_TTL",
    "RemoteSessionCache",
    "SSHExecutor",
    "shared_session_cache",
]
