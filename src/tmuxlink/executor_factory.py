"""Executor factory - picks the executor for a session target.

Callers describe *where* a session lives (a host id, or nothing for local);
the factory is the only place that turns that into a concrete executor.
"""

import logging
import threading

from tmuxlink.local_executor import LocalExecutor
from tmuxlink.ssh.connection_pool import ConnectionPool
from tmuxlink.ssh_executor import RemoteSessionCache, SSHExecutor
from tmuxlink.tmux_executor import (
    DEFAULT_COMMAND_TIMEOUT,
    ExecutorConfig,
    SessionExecutor,
    SessionTarget,
)

logger = logging.getLogger(__name__)


class ExecutorFactory:
    """Build (and reuse) one executor per host.

    Example:
        >>> factory = ExecutorFactory(pool)
        >>> factory.for_host("").is_remote
        False
        >>> factory.for_target(SessionTarget(name="dev", host_id="build")).host_id
        'build'
    """

    def __init__(
        self,
        pool: ConnectionPool,
        local_tmux_path: str = "tmux",
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        session_cache: RemoteSessionCache | None = None,
    ):
        self.pool = pool
        self.local_tmux_path = local_tmux_path
        self.command_timeout = command_timeout
        self.session_cache = session_cache
        self._executors: dict[str, SessionExecutor] = {}
        self._lock = threading.Lock()

    def for_host(self, host_id: str = "") -> SessionExecutor:
        """Return the executor for a host ("" = local).

        Raises:
            ConnectionUnavailable: If a remote host is not registered
        """
        with self._lock:
            executor = self._executors.get(host_id)
            if executor is not None:
                return executor

            if host_id:
                executor = SSHExecutor.from_pool(
                    self.pool,
                    host_id,
                    command_timeout=self.command_timeout,
                    session_cache=self.session_cache,
                )
            else:
                executor = LocalExecutor(
                    ExecutorConfig(
                        tmux_path=self.local_tmux_path, command_timeout=self.command_timeout
                    )
                )
            self._executors[host_id] = executor

        logger.debug(f"Created {type(executor).__name__} for {host_id or 'local'}")
        return executor

    def for_target(self, target: SessionTarget) -> SessionExecutor:
        return self.for_host(target.host_id)


__all__ = ["ExecutorFactory"]
