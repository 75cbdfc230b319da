"""Tuning knobs for terminal streaming sessions.

The idle/reconciliation thresholds were found empirically; they are exposed
here (and in the [streaming] config table) rather than hard-coded.
"""

from dataclasses import dataclass, fields


def _matches(value, expected: type) -> bool:
    # bool is a subclass of int; only a bool field takes a bool
    if isinstance(value, bool):
        return expected is bool
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


@dataclass
class StreamingSettings:
    """Streaming session configuration.

    Attributes:
        pty_streaming: Use the attach-based live stream for local sessions
        remote_pty_streaming: Use the live stream for remote sessions
            (False forces fallback polling for remote targets)
        idle_threshold: Seconds without output before reconciling scrollback
        input_quiet_period: Skip reconciliation if input arrived this recently
        min_reconcile_bytes: Output needed since the last reconciliation
        idle_check_interval: How often the idle task wakes up
        status_interval: Alternate-screen polling interval
        history_lines: Scrollback lines captured at bootstrap/reconciliation
        fallback_interval: Capture interval in fallback mode (local)
        remote_fallback_interval: Capture interval in fallback mode (remote)
        max_fallback_errors: Consecutive link errors before fallback gives up
        read_size: Maximum bytes per pty read
        command_timeout: Timeout for each executor round-trip
    """

    pty_streaming: bool = True
    remote_pty_streaming: bool = True
    idle_threshold: float = 0.5
    input_quiet_period: float = 0.2
    min_reconcile_bytes: int = 1024
    idle_check_interval: float = 0.05
    status_interval: float = 0.3
    history_lines: int = 10000
    fallback_interval: float = 0.08
    remote_fallback_interval: float = 0.1
    max_fallback_errors: int = 3
    read_size: int = 32768
    command_timeout: float = 10.0

    def __post_init__(self):
        """Validate configuration."""
        for name in (
            "idle_threshold",
            "idle_check_interval",
            "status_interval",
            "fallback_interval",
            "remote_fallback_interval",
            "command_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.input_quiet_period < 0:
            raise ValueError("input_quiet_period cannot be negative")
        if self.min_reconcile_bytes < 0:
            raise ValueError("min_reconcile_bytes cannot be negative")
        if self.history_lines < 0:
            raise ValueError("history_lines cannot be negative")
        if self.max_fallback_errors <= 0:
            raise ValueError("max_fallback_errors must be positive")
        if self.read_size <= 0:
            raise ValueError("read_size must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "StreamingSettings":
        """Build settings from a config table, ignoring unknown keys.

        Values are not coerced: ``"false"`` for a bool field is rejected
        rather than read as True. Integers are accepted for float fields.

        Raises:
            TypeError: If a value does not match its field's type
        """
        known = {f.name: f.type for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            expected = known[key]
            if not _matches(value, expected):
                raise TypeError(
                    f"{key} must be {expected.__name__}, got {type(value).__name__}: {value!r}"
                )
            values[key] = expected(value)
        return cls(**values)

    def streaming_enabled(self, remote: bool) -> bool:
        """Whether the attach-based path may be used for this locality."""
        if not self.pty_streaming:
            return False
        return self.remote_pty_streaming if remote else True

    def poll_interval(self, remote: bool) -> float:
        return self.remote_fallback_interval if remote else self.fallback_interval


__all__ = ["StreamingSettings"]
