"""Configuration management module.

This module handles persistent configuration storage using TOML format:
SSH host definitions for the connection pool and streaming tuning knobs.

Security:
- Config file permissions: 0600 (owner read/write only)
- Only identity file *paths* are stored, never key material

Example config (~/.tmuxlink/config.toml):

    [ssh_hosts.build]
    host = "10.0.0.5"
    user = "dev"
    identity_file = "~/.ssh/build_ed25519"

    [streaming]
    idle_threshold = 0.5
    remote_pty_streaming = false
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import ParseError

from tmuxlink.ssh.connection import SSHHostConfig
from tmuxlink.ssh.connection_pool import ConnectionPool
from tmuxlink.streaming.settings import StreamingSettings

logger = logging.getLogger(__name__)

_HOST_DEFAULTS = {f.name: f.default for f in fields(SSHHostConfig)}


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class TransportConfig:
    """tmuxlink configuration data."""

    hosts: dict[str, SSHHostConfig] = field(default_factory=dict)
    streaming: StreamingSettings = field(default_factory=StreamingSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransportConfig":
        """Create from a parsed TOML document.

        Invalid host entries are skipped with a warning; an invalid
        [streaming] table raises ConfigError.
        """
        hosts: dict[str, SSHHostConfig] = {}
        for host_id, entry in (data.get("ssh_hosts") or {}).items():
            try:
                hosts[host_id] = host_from_dict(entry)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring invalid ssh host '{host_id}': {e}")

        try:
            streaming = StreamingSettings.from_dict(data.get("streaming") or {})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid [streaming] settings: {e}") from e

        return cls(hosts=hosts, streaming=streaming)


def host_from_dict(entry: dict[str, Any]) -> SSHHostConfig:
    """Build an SSHHostConfig from a [ssh_hosts.<id>] table."""
    if not isinstance(entry, dict):
        raise TypeError("host entry must be a table")
    if "host" not in entry:
        raise ValueError("missing required key 'host'")
    unknown = set(entry) - set(_HOST_DEFAULTS)
    if unknown:
        raise ValueError(f"unknown keys: {sorted(unknown)}")
    return SSHHostConfig(**entry)


def host_to_dict(config: SSHHostConfig) -> dict[str, Any]:
    """Serialize a host, keeping only non-default values (TOML has no None)."""
    data: dict[str, Any] = {"host": config.host}
    for name, default in _HOST_DEFAULTS.items():
        value = getattr(config, name)
        if name != "host" and value is not None and value != default:
            data[name] = value
    return data


class ConfigManager:
    """Manage the tmuxlink configuration file.

    Configuration is stored at ~/.tmuxlink/config.toml (or $TMUXLINK_CONFIG)
    with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".tmuxlink"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"
    CONFIG_ENV_VAR = "TMUXLINK_CONFIG"
    PTY_STREAMING_ENV_VAR = "TMUXLINK_PTY_STREAMING"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Resolve the config file path: explicit path, then env var, then default."""
        if custom_path:
            return Path(custom_path).expanduser()
        env_path = os.environ.get(cls.CONFIG_ENV_VAR)
        if env_path:
            return Path(env_path).expanduser()
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def pty_streaming_override(cls) -> bool | None:
        """Read TMUXLINK_PTY_STREAMING (enabled/disabled); None if unset or unrecognized."""
        value = os.environ.get(cls.PTY_STREAMING_ENV_VAR, "").strip().lower()
        if not value:
            return None
        if value == "enabled":
            return True
        if value == "disabled":
            return False
        logger.warning(f"Ignoring {cls.PTY_STREAMING_ENV_VAR}={value!r} (expected enabled/disabled)")
        return None

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> TransportConfig:
        """Load configuration.

        A missing file yields defaults. A corrupt file is logged and yields
        defaults too, so read paths never fail on configuration. The
        TMUXLINK_PTY_STREAMING environment variable overrides the file.

        Returns:
            TransportConfig object
        """
        config_path = cls.get_config_path(custom_path)
        config = TransportConfig()

        if config_path.exists():
            try:
                mode = config_path.stat().st_mode & 0o777
                if mode & 0o077:  # group/other have permissions
                    logger.warning(
                        f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                    )
                    os.chmod(config_path, 0o600)

                with open(config_path, "rb") as f:
                    data = tomllib.load(f)
                config = TransportConfig.from_dict(data)
                logger.debug(f"Loaded config from: {config_path}")
            except (OSError, tomllib.TOMLDecodeError, ConfigError) as e:
                logger.warning(f"Failed to load config {config_path}, using defaults: {e}")
                config = TransportConfig()
        else:
            logger.debug("Config file not found, using defaults")

        override = cls.pty_streaming_override()
        if override is not None:
            config.streaming.pty_streaming = override
        return config

    @classmethod
    def _load_document(cls, config_path: Path) -> tomlkit.TOMLDocument:
        if not config_path.exists():
            return tomlkit.document()
        try:
            with open(config_path) as f:
                return tomlkit.load(f)
        except (OSError, ParseError) as e:
            raise ConfigError(f"Failed to read config {config_path}: {e}") from e

    @classmethod
    def _write_document(cls, config_path: Path, doc: tomlkit.TOMLDocument) -> None:
        """Write atomically with 0600 permissions."""
        temp_path = config_path.with_suffix(".tmp")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            if config_path.parent == cls.DEFAULT_CONFIG_DIR:
                os.chmod(config_path.parent, 0o700)

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)
            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

        logger.debug(f"Saved config to: {config_path}")

    @classmethod
    def save_host(cls, host_id: str, config: SSHHostConfig, custom_path: str | None = None) -> Path:
        """Add or replace a [ssh_hosts.<host_id>] table, preserving comments.

        Returns:
            Path of the written config file

        Raises:
            ConfigError: If the file cannot be read or written
        """
        if not host_id:
            raise ConfigError("host id cannot be empty")

        config_path = cls.get_config_path(custom_path)
        doc = cls._load_document(config_path)

        if "ssh_hosts" not in doc:
            doc["ssh_hosts"] = tomlkit.table()
        hosts_table = doc["ssh_hosts"]

        table = tomlkit.table()
        for key, value in host_to_dict(config).items():
            table[key] = value
        hosts_table[host_id] = table

        cls._write_document(config_path, doc)
        logger.info(f"Saved host '{host_id}' to {config_path}")
        return config_path

    @classmethod
    def remove_host(cls, host_id: str, custom_path: str | None = None) -> bool:
        """Delete a host table. Returns False if it did not exist."""
        config_path = cls.get_config_path(custom_path)
        if not config_path.exists():
            return False

        doc = cls._load_document(config_path)
        hosts_table = doc.get("ssh_hosts")
        if hosts_table is None or host_id not in hosts_table:
            return False

        del hosts_table[host_id]
        cls._write_document(config_path, doc)
        return True

    @classmethod
    def register_hosts(
        cls,
        pool: ConnectionPool,
        config: TransportConfig | None = None,
        custom_path: str | None = None,
    ) -> list[str]:
        """Register every configured host with a pool (no connections are made).

        Returns:
            Registered host ids
        """
        config = config or cls.load_config(custom_path)
        for host_id, host_config in config.hosts.items():
            pool.register(host_id, host_config)
        logger.debug(f"Registered {len(config.hosts)} host(s) with the connection pool")
        return sorted(config.hosts)


__all__ = [
    "ConfigError",
    "ConfigManager",
    "TransportConfig",
    "host_from_dict",
    "host_to_dict",
]
