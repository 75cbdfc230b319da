"""SSH Connection Pool Module - Per-host link reuse with liveness caching.

Philosophy:
- Explicitly constructed, passed by reference (default_pool() is only a convenience)
- Registration is pure bookkeeping; links are established lazily on first get()
- Failed probes are retried lazily on the next get(), never in the background
- Narrow lock scopes: the map lock is never held across network I/O

Public API (the "studs"):
    ConnectionPool: Thread-safe pool of SSHConnection objects keyed by host id
    HostStatus: Liveness snapshot for one host
    HealthChecker: Handle for the optional periodic health-check thread
    default_pool: Process-wide shared pool (lazily created)
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tmuxlink.errors import ConnectionUnavailable, LinkUnavailable
from tmuxlink.ssh.connection import SSHConnection, SSHHostConfig, resolve_host_config

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_WINDOW = 30.0  # seconds
MAX_PROBE_WORKERS = 10

ConnectionFactory = Callable[[str, SSHHostConfig], SSHConnection]


@dataclass
class HostStatus:
    """Liveness snapshot for one registered host.

    Attributes:
        host_id: Logical host identifier
        live: True if the last probe succeeded
        last_check: Wall-clock time of the last probe (None = never checked)
        error: Last error message, if any
        target: ssh target (user@host), None if the host is not registered
    """

    host_id: str
    live: bool
    last_check: float | None = None
    error: str | None = None
    target: str | None = None

    @property
    def label(self) -> str:
        if self.live:
            return "connected"
        if self.target is None:
            return "not registered"
        return "not connected"


class HealthChecker:
    """Periodic health-check thread started by ConnectionPool.start_health_checker()."""

    def __init__(self, pool: "ConnectionPool", interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._pool = pool
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="tmuxlink-health", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            results = self._pool.health_check()
            down = [host for host, ok in results.items() if not ok]
            if down:
                logger.debug(f"Health check: unreachable hosts {down}")

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)


class ConnectionPool:
    """Pool of multiplexed SSH links keyed by logical host id.

    Lock scopes:
        _lock: guards _configs, _connections, _host_locks and _stats.
            Held only for dictionary access, never during a probe.
        _host_locks[host_id]: serializes creation/probing for one host, so two
            callers never establish duplicate links to the same host while
            callers for other hosts proceed unblocked.

    Lock order is always pool lock -> connection state lock; connections never
    call back into the pool.

    Example:
        >>> pool = ConnectionPool()
        >>> pool.register("build", SSHHostConfig(host="10.0.0.5", user="dev"))
        >>> conn = pool.get("build")  # probes once
        >>> conn = pool.get("build")  # cached, no round-trip
        >>> pool.shutdown()
    """

    def __init__(
        self,
        freshness_window: float = DEFAULT_FRESHNESS_WINDOW,
        control_dir: Path | None = None,
        connection_factory: ConnectionFactory | None = None,
        resolve_ssh_config: bool = True,
    ):
        """Initialize an empty pool.

        Args:
            freshness_window: Seconds a probe result is trusted by status()
            control_dir: Directory for ControlMaster sockets (default: tempdir)
            connection_factory: Builds a connection for (host_id, config)
            resolve_ssh_config: Fill empty host fields from ~/.ssh/config
        """
        if freshness_window < 0:
            raise ValueError("freshness_window cannot be negative")

        self.freshness_window = freshness_window
        self.control_dir = control_dir
        self.resolve_ssh_config = resolve_ssh_config
        self._connection_factory = connection_factory or self._default_factory

        self._lock = threading.Lock()
        self._configs: dict[str, SSHHostConfig] = {}
        self._connections: dict[str, SSHConnection] = {}
        self._host_locks: dict[str, threading.Lock] = {}
        self._stats = {
            "connections_created": 0,
            "connections_reused": 0,
            "probes": 0,
            "probe_failures": 0,
        }
        self._health_checker: HealthChecker | None = None

    def _default_factory(self, host_id: str, config: SSHHostConfig) -> SSHConnection:
        if self.resolve_ssh_config:
            config = resolve_host_config(config)
        return SSHConnection(config, host_id=host_id, control_dir=self.control_dir)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, host_id: str, config: SSHHostConfig) -> None:
        """Store configuration for a host without connecting.

        Re-registering a host with a different configuration drops its cached
        link so the next get() connects with the new settings.
        """
        if not host_id:
            raise ValueError("host_id cannot be empty")

        stale: SSHConnection | None = None
        with self._lock:
            previous = self._configs.get(host_id)
            self._configs[host_id] = config
            self._host_locks.setdefault(host_id, threading.Lock())
            if previous is not None and previous != config:
                stale = self._connections.pop(host_id, None)

        if stale is not None:
            logger.debug(f"Configuration for {host_id} changed, closing cached link")
            stale.close()

    def list_hosts(self) -> list[str]:
        with self._lock:
            return sorted(self._configs)

    def get_config(self, host_id: str) -> SSHHostConfig | None:
        with self._lock:
            return self._configs.get(host_id)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get(self, host_id: str) -> SSHConnection:
        """Return a usable connection for a host.

        A cached live connection is returned without a network round-trip.
        Otherwise a link is created (if needed), verified with one probe and
        cached.

        Args:
            host_id: Registered host identifier

        Returns:
            Live SSHConnection

        Raises:
            ConnectionUnavailable: Host not registered or probe failed
        """
        with self._lock:
            conn = self._connections.get(host_id)
            if conn is not None and conn.is_live():
                self._stats["connections_reused"] += 1
                return conn
            if host_id not in self._configs:
                raise ConnectionUnavailable(f"Host '{host_id}' is not registered", host_id=host_id)
            host_lock = self._host_locks[host_id]

        with host_lock:
            # Another caller may have connected while we waited
            conn = self._get_or_create(host_id)
            if conn.is_live():
                with self._lock:
                    self._stats["connections_reused"] += 1
                return conn

            try:
                self._probe(conn)
            except LinkUnavailable as e:
                raise ConnectionUnavailable(
                    f"Cannot connect to {host_id}: {e}", host_id=host_id, cause=e
                ) from e
            return conn

    def get_if_exists(self, host_id: str) -> SSHConnection | None:
        """Return the cached connection if it is live, without connecting."""
        with self._lock:
            conn = self._connections.get(host_id)
        if conn is not None and conn.is_live():
            return conn
        return None

    def _get_or_create(self, host_id: str) -> SSHConnection:
        """Return the cached connection object, creating it if missing.

        Must be called with the host lock held; the factory runs outside the
        map lock.
        """
        with self._lock:
            conn = self._connections.get(host_id)
            config = self._configs.get(host_id)
        if conn is not None:
            return conn
        if config is None:
            raise ConnectionUnavailable(f"Host '{host_id}' is not registered", host_id=host_id)

        conn = self._connection_factory(host_id, config)
        with self._lock:
            self._connections[host_id] = conn
            self._stats["connections_created"] += 1
        logger.debug(f"Created connection object for {host_id} ({conn.target})")
        return conn

    def _probe(self, conn: SSHConnection) -> None:
        with self._lock:
            self._stats["probes"] += 1
        try:
            conn.probe()
        except LinkUnavailable:
            with self._lock:
                self._stats["probe_failures"] += 1
            raise

    def mark_unavailable(self, host_id: str, error: Exception) -> None:
        """Record a link failure observed by a caller (e.g. ssh exit 255).

        The next get() for the host re-probes exactly once.
        """
        with self._lock:
            conn = self._connections.get(host_id)
        if conn is not None:
            conn.mark_unavailable(error)

    # ------------------------------------------------------------------
    # Status and health
    # ------------------------------------------------------------------

    def status(self, *host_ids: str) -> dict[str, HostStatus]:
        """Return per-host liveness.

        Hosts checked within the freshness window are answered from cache.
        The rest are probed concurrently; one slow host never delays the
        answer for a host whose status is cached.

        Args:
            host_ids: Hosts to report (default: every registered host)

        Returns:
            Mapping of host id to HostStatus
        """
        ids = list(host_ids) or self.list_hosts()
        results: dict[str, HostStatus] = {}
        stale: list[str] = []

        for host_id in ids:
            with self._lock:
                registered = host_id in self._configs
                conn = self._connections.get(host_id)
            if not registered:
                results[host_id] = HostStatus(host_id=host_id, live=False, error="host not registered")
            elif conn is not None and conn.is_fresh(self.freshness_window):
                results[host_id] = self._snapshot(host_id, conn)
            else:
                stale.append(host_id)

        if len(stale) == 1:
            results[stale[0]] = self._check(stale[0])
        elif stale:
            with ThreadPoolExecutor(max_workers=min(len(stale), MAX_PROBE_WORKERS)) as executor:
                for host_id, host_status in zip(stale, executor.map(self._check, stale)):
                    results[host_id] = host_status

        return {host_id: results[host_id] for host_id in ids}

    def _check(self, host_id: str) -> HostStatus:
        """Probe one host for status(), honoring freshness after waiting for its lock."""
        with self._lock:
            host_lock = self._host_locks.get(host_id)
        if host_lock is None:
            return HostStatus(host_id=host_id, live=False, error="host not registered")

        with host_lock:
            try:
                conn = self._get_or_create(host_id)
            except ConnectionUnavailable as e:
                return HostStatus(host_id=host_id, live=False, error=str(e))
            if not conn.is_fresh(self.freshness_window):
                try:
                    self._probe(conn)
                except LinkUnavailable as e:
                    logger.debug(f"Status probe for {host_id} failed: {e}")
            return self._snapshot(host_id, conn)

    @staticmethod
    def _snapshot(host_id: str, conn: SSHConnection) -> HostStatus:
        error = conn.last_error
        return HostStatus(
            host_id=host_id,
            live=conn.is_live(),
            last_check=conn.last_check,
            error=str(error) if error else None,
            target=conn.target,
        )

    def test_connection(self, host_id: str) -> bool:
        """Force a fresh probe of a host, bypassing the cache."""
        with self._lock:
            host_lock = self._host_locks.get(host_id)
        if host_lock is None:
            return False

        with host_lock:
            try:
                conn = self._get_or_create(host_id)
                self._probe(conn)
            except (ConnectionUnavailable, LinkUnavailable) as e:
                logger.info(f"Connection test for {host_id} failed: {e}")
                return False
        return True

    def health_check(self) -> dict[str, bool]:
        """Probe every registered host concurrently.

        Returns:
            Mapping of host id to reachability
        """
        hosts = self.list_hosts()
        if not hosts:
            return {}
        with ThreadPoolExecutor(max_workers=min(len(hosts), MAX_PROBE_WORKERS)) as executor:
            return dict(zip(hosts, executor.map(self.test_connection, hosts)))

    def start_health_checker(self, interval: float = 60.0) -> HealthChecker:
        """Start the optional periodic health checker.

        Returns:
            Handle whose stop() ends the thread (also stopped by shutdown())
        """
        if self._health_checker is not None and self._health_checker.is_running:
            return self._health_checker
        checker = HealthChecker(self, interval)
        checker.start()
        self._health_checker = checker
        logger.debug(f"Started health checker (interval={interval}s)")
        return checker

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self, host_id: str) -> None:
        """Drop the cached link for a host and release its ControlMaster.

        The host stays registered; the next get() reconnects.
        """
        with self._lock:
            conn = self._connections.pop(host_id, None)
        if conn is not None:
            conn.close()
            logger.info(f"Closed connection to {host_id}")

    def close_all(self) -> None:
        """Close every cached link and its ControlMaster."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            conn.close()

    def shutdown(self) -> None:
        """Stop the health checker (if any) and close all links."""
        if self._health_checker is not None:
            self._health_checker.stop()
            self._health_checker = None
        self.close_all()

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics.

        Returns:
            Dictionary with connection statistics

        Example:
            >>> pool = ConnectionPool()
            >>> pool.get_stats()["probes"]
            0
        """
        with self._lock:
            stats = dict(self._stats)
            stats["registered_hosts"] = len(self._configs)
            stats["cached_connections"] = len(self._connections)
            connections = list(self._connections.values())
        stats["live_connections"] = sum(1 for conn in connections if conn.is_live())
        total = stats["connections_created"] + stats["connections_reused"]
        stats["reuse_ratio"] = stats["connections_reused"] / total if total > 0 else 0.0
        return stats


_default_pool: ConnectionPool | None = None
_default_pool_lock = threading.Lock()


def default_pool() -> ConnectionPool:
    """Return the shared process-wide pool, creating it on first use."""
    global _default_pool
    with _default_pool_lock:
        if _default_pool is None:
            _default_pool = ConnectionPool()
        return _default_pool


def shutdown_default_pool() -> None:
    """Shut down and forget the shared pool (no-op if never created)."""
    global _default_pool
    with _default_pool_lock:
        pool, _default_pool = _default_pool, None
    if pool is not None:
        pool.shutdown()


__all__ = [
    "ConnectionPool",
    "HealthChecker",
    "HostStatus",
    "default_pool",
    "shutdown_default_pool",
]
