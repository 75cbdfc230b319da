"""Unit tests for SSHConnection and host configuration.

Coverage:
- ssh argument construction (multiplexing, jump hosts, keys, ports, PTY)
- Remote command execution and ssh-level failure detection (exit 255, timeouts)
- Probe result caching
- ~/.ssh/config resolution via paramiko
"""

import subprocess
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from tmuxlink.errors import LinkUnavailable
from tmuxlink.ssh.connection import (
    PATH_PREFIX,
    CommandResult,
    SSHConnection,
    SSHHostConfig,
    resolve_host_config,
)


def completed(returncode=0, stdout="", stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def connection(tmp_path):
    config = SSHHostConfig(host="10.0.0.5", user="dev")
    return SSHConnection(config, host_id="build", control_dir=tmp_path)


# ============================================================================
# CONFIGURATION
# ============================================================================


class TestSSHHostConfig:
    """Test host configuration validation."""

    def test_defaults(self):
        config = SSHHostConfig(host="example.com")

        assert config.port == 22
        assert config.user is None
        assert config.tmux_path == "tmux"
        assert config.target == "example.com"

    def test_target_includes_user(self):
        assert SSHHostConfig(host="example.com", user="dev").target == "dev@example.com"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"host": ""},
            {"host": "example.com", "port": 0},
            {"host": "example.com", "port": 70000},
            {"host": "example.com", "connect_timeout": 0},
        ],
    )
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ValueError):
            SSHHostConfig(**kwargs)

    def test_command_result_ok(self):
        assert CommandResult(0, "", "").ok
        assert not CommandResult(1, "", "").ok


class TestResolveHostConfig:
    """Test filling host fields from an ssh config file."""

    def test_fills_missing_fields(self, ssh_config_file):
        resolved = resolve_host_config(SSHHostConfig(host="devbox"), ssh_config_file)

        assert resolved.host == "devbox"
        assert resolved.user == "alice"
        assert resolved.port == 2222
        assert resolved.identity_file.endswith("dev_key")
        assert resolved.jump_host == "bastion.example.com"

    def test_explicit_values_win(self, ssh_config_file):
        config = SSHHostConfig(host="devbox", user="bob", port=2200, jump_host="jump")

        resolved = resolve_host_config(config, ssh_config_file)

        assert resolved.user == "bob"
        assert resolved.port == 2200
        assert resolved.jump_host == "jump"

    def test_unmatched_host_is_unchanged(self, ssh_config_file):
        config = SSHHostConfig(host="elsewhere")

        assert resolve_host_config(config, ssh_config_file) is config

    def test_missing_file_is_unchanged(self, tmp_path):
        config = SSHHostConfig(host="devbox")

        assert resolve_host_config(config, tmp_path / "nope") is config


# ============================================================================
# COMMAND CONSTRUCTION
# ============================================================================


class TestBuildSSHArgs:
    """Test ssh argument construction."""

    def test_multiplexing_options(self, connection):
        args = connection.build_ssh_args()

        assert args[0] == "ssh"
        assert args[-1] == "dev@10.0.0.5"
        assert "ControlMaster=auto" in args
        assert f"ControlPath={connection.control_path}" in args
        assert "ControlPersist=300" in args
        assert "BatchMode=yes" in args
        assert "ConnectTimeout=10" in args
        assert "-t" not in args
        assert "-p" not in args

    def test_jump_host_key_and_port(self, tmp_path):
        config = SSHHostConfig(
            host="10.0.0.5", port=2222, identity_file="~/.ssh/id_test", jump_host="bastion"
        )
        args = SSHConnection(config, control_dir=tmp_path).build_ssh_args()

        assert args[args.index("-J") + 1] == "bastion"
        assert args[args.index("-p") + 1] == "2222"
        key = args[args.index("-i") + 1]
        assert "~" not in key
        assert key.endswith(".ssh/id_test")

    def test_tty_for_interactive_sessions(self, connection):
        argv = connection.interactive_argv("tmux attach-session -t dev")

        assert "-t" in argv
        assert argv[-1] == f"{PATH_PREFIX} tmux attach-session -t dev"

    def test_control_path_is_short_and_stable(self, connection, tmp_path):
        other = SSHConnection(SSHHostConfig(host="10.0.0.5", user="dev"), control_dir=tmp_path)

        assert connection.control_path == other.control_path
        assert connection.control_path.parent == tmp_path
        assert len(connection.control_path.name) < 40

    def test_control_path_differs_per_target(self, tmp_path):
        a = SSHConnection(SSHHostConfig(host="a.example.com"), control_dir=tmp_path)
        b = SSHConnection(SSHHostConfig(host="b.example.com"), control_dir=tmp_path)

        assert a.control_path != b.control_path


# ============================================================================
# EXECUTION
# ============================================================================


class TestRunCommand:
    """Test remote command execution."""

    def test_returns_remote_result(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(1, "", "can't find session: dev")

            result = connection.run_command("tmux has-session -t dev", timeout=7)

        assert result.returncode == 1
        assert result.stderr == "can't find session: dev"
        args = mock_run.call_args[0][0]
        assert args[-1] == f"{PATH_PREFIX} tmux has-session -t dev"
        assert mock_run.call_args.kwargs["timeout"] == 7
        assert mock_run.call_args.kwargs["stdin"] == subprocess.DEVNULL

    def test_input_is_forwarded(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(0)

            connection.run_command("tmux load-buffer -", input="payload")

        assert mock_run.call_args.kwargs["input"] == "payload"
        assert "stdin" not in mock_run.call_args.kwargs

    def test_exit_255_marks_link_unavailable(self, connection):
        connection._record(True, None)

        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(255, "", "Connection reset by peer")

            with pytest.raises(LinkUnavailable) as exc_info:
                connection.run_command("tmux ls")

        assert exc_info.value.host_id == "build"
        assert not connection.is_live()
        assert connection.last_error is exc_info.value

    def test_timeout_marks_link_unavailable(self, connection):
        connection._record(True, None)

        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="ssh", timeout=10)

            with pytest.raises(LinkUnavailable):
                connection.run_command("tmux ls")

        assert not connection.is_live()


class TestProbe:
    """Test link verification."""

    def test_successful_probe_marks_live(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(0, "ok\n")

            connection.probe()

        assert connection.is_live()
        assert connection.last_error is None
        assert connection.is_fresh(30)
        assert mock_run.call_args[0][0][-2:] == ["echo", "ok"]

    def test_failed_probe_raises_and_records(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(255, "", "Permission denied (publickey)")

            with pytest.raises(LinkUnavailable, match="Permission denied"):
                connection.probe()

        assert not connection.is_live()
        assert connection.last_check is not None

    def test_fresh_probe_is_reused(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(0, "ok\n")

            connection.probe(freshness_window=30)
            connection.probe(freshness_window=30)

        assert mock_run.call_count == 1

    def test_missing_ssh_binary(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(LinkUnavailable, match="ssh binary not found"):
                connection.probe()


class TestCloseControlMaster:
    """Test ControlMaster teardown."""

    def test_no_socket_no_call(self, connection):
        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            connection.close_control_master()

        mock_run.assert_not_called()

    def test_exit_request_and_socket_removal(self, connection):
        Path(connection.control_path).touch()

        with patch("tmuxlink.ssh.connection.subprocess.run") as mock_run:
            mock_run.return_value = completed(0)
            connection.close()

        args = mock_run.call_args[0][0]
        assert args[:3] == ["ssh", "-O", "exit"]
        assert not connection.control_path.exists()
        assert not connection.is_live()
