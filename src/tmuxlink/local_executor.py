"""Local session executor - runs tmux as a child process.

Public API (the "studs"):
    LocalExecutor: SessionExecutor for the local tmux server
"""

import logging
import subprocess

from tmuxlink.errors import CommandFailed
from tmuxlink.ssh.connection import CommandResult
from tmuxlink.tmux_executor import ExecutorConfig, SessionExecutor

logger = logging.getLogger(__name__)


class LocalExecutor(SessionExecutor):
    """Execute tmux commands on this machine.

    Example:
        >>> executor = LocalExecutor()
        >>> executor.create("dev", work_dir="/home/me/project")
        >>> executor.exists("dev")
        True
    """

    def __init__(self, config: ExecutorConfig | None = None):
        config = config or ExecutorConfig()
        if config.host_id:
            raise ValueError("LocalExecutor cannot have a host_id")
        super().__init__(config)

    def _run_tmux(
        self, args: list[str], timeout: float | None = None, input: str | None = None
    ) -> CommandResult:
        cmd = self.tmux_argv(args)
        timeout = timeout or self.config.command_timeout
        logger.debug(f"Running: {cmd}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandFailed(f"tmux {args[0]} timed out after {timeout}s", cause=e) from e
        except FileNotFoundError as e:
            raise CommandFailed(
                f"tmux not found: {self.config.tmux_path}", returncode=127, cause=e
            ) from e

        return CommandResult(result.returncode, result.stdout, result.stderr)

    def attach_argv(self, name: str) -> list[str]:
        return self.tmux_argv(["attach-session", "-t", name])


__all__ = ["LocalExecutor"]
