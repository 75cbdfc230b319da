"""tmuxlink command line interface.

Commands:
    - hosts list|check|add: Manage and probe configured SSH hosts
    - sessions list|new|kill|capture: tmux session lifecycle (local or remote)
    - attach: Interactive attach (Ctrl+Q detaches, the session keeps running)
"""

import logging
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from tmuxlink import __version__
from tmuxlink.config_manager import ConfigError, ConfigManager, TransportConfig
from tmuxlink.errors import TransportError
from tmuxlink.executor_factory import ExecutorFactory
from tmuxlink.ssh.connection import SSHHostConfig
from tmuxlink.ssh.connection_pool import ConnectionPool
from tmuxlink.tmux_executor import SessionExecutor

logger = logging.getLogger(__name__)

__all__ = ["main"]


class CliState:
    """Lazily built pool and executors shared by one CLI invocation."""

    def __init__(self, config_path: str | None):
        self.config_path = config_path
        self._config: TransportConfig | None = None
        self._pool: ConnectionPool | None = None
        self._factory: ExecutorFactory | None = None

    @property
    def config(self) -> TransportConfig:
        if self._config is None:
            self._config = ConfigManager.load_config(self.config_path)
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = ConnectionPool()
            ConfigManager.register_hosts(self._pool, self.config)
        return self._pool

    def executor(self, host_id: str | None) -> SessionExecutor:
        if self._factory is None:
            self._factory = ExecutorFactory(
                self.pool, command_timeout=self.config.streaming.command_timeout
            )
        return self._factory.for_host(host_id or "")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown()


def _run(console: Console, action: str, func) -> None:
    """Run a command body with the CLI's error handling."""
    try:
        func()
    except (TransportError, ConfigError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        logger.exception(f"{action} failed")
        sys.exit(1)


def _format_activity(stamp: int) -> str:
    if stamp <= 0:
        return "-"
    return datetime.fromtimestamp(stamp).strftime("%Y-%m-%d %H:%M:%S")


host_option = click.option("--host", "host_id", help="Host id from config (default: local)", type=str)


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--config", "config_path", help="Config file path", type=click.Path())
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """tmuxlink - persistent tmux sessions, locally or over SSH.

    \b
    Examples:
        tmuxlink hosts add build --host 10.0.0.5 --user dev
        tmuxlink hosts check
        tmuxlink sessions new api --host build --dir /srv/api
        tmuxlink attach api --host build
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    state = CliState(config_path)
    ctx.obj = state
    ctx.call_on_close(state.close)


# ----------------------------------------------------------------------
# hosts
# ----------------------------------------------------------------------


@main.group(name="hosts")
def hosts_group() -> None:
    """Manage SSH hosts used for remote sessions."""
    pass


@hosts_group.command(name="list")
@click.pass_obj
def hosts_list(state: CliState) -> None:
    """List configured hosts."""
    console = Console()

    def body() -> None:
        hosts = state.config.hosts
        if not hosts:
            console.print("[yellow]No hosts configured.[/yellow]")
            console.print("Add one with: tmuxlink hosts add <id> --host <address>")
            return

        table = Table(title="SSH Hosts")
        table.add_column("ID", style="cyan")
        table.add_column("Target")
        table.add_column("Port", justify="right")
        table.add_column("Jump Host", style="dim")
        table.add_column("tmux", style="dim")
        for host_id in sorted(hosts):
            cfg = hosts[host_id]
            table.add_row(host_id, cfg.target, str(cfg.port), cfg.jump_host or "-", cfg.tmux_path)
        console.print(table)

    _run(console, "hosts list", body)


@hosts_group.command(name="check")
@click.argument("host_ids", nargs=-1)
@click.pass_obj
def hosts_check(state: CliState, host_ids: tuple[str, ...]) -> None:
    """Probe hosts (all configured hosts by default)."""
    console = Console()

    def body() -> None:
        pool = state.pool
        if not host_ids and not pool.list_hosts():
            console.print("[yellow]No hosts configured.[/yellow]")
            return

        with console.status("[dim]Probing hosts...[/dim]"):
            statuses = pool.status(*host_ids)

        table = Table(title="Host Status")
        table.add_column("ID", style="cyan")
        table.add_column("Status")
        table.add_column("Detail", style="dim")
        for host_id, host_status in statuses.items():
            color = "green" if host_status.live else "red"
            table.add_row(
                host_id, f"[{color}]{host_status.label}[/{color}]", host_status.error or ""
            )
        console.print(table)

        if not all(s.live for s in statuses.values()):
            sys.exit(1)

    _run(console, "hosts check", body)


@hosts_group.command(name="add")
@click.argument("host_id")
@click.option("--host", "address", required=True, help="Hostname, IP or ~/.ssh/config alias")
@click.option("--user", help="SSH username")
@click.option("--port", type=int, default=22, show_default=True, help="SSH port")
@click.option("--identity-file", help="Private key path")
@click.option("--jump-host", help="Jump host (ssh -J)")
@click.option("--tmux-path", default="tmux", show_default=True, help="tmux binary on the host")
@click.option("--connect-timeout", type=int, default=10, show_default=True, help="Seconds")
@click.pass_obj
def hosts_add(
    state: CliState,
    host_id: str,
    address: str,
    user: str | None,
    port: int,
    identity_file: str | None,
    jump_host: str | None,
    tmux_path: str,
    connect_timeout: int,
) -> None:
    """Add or replace a host in the config file."""
    console = Console()

    def body() -> None:
        config = SSHHostConfig(
            host=address,
            user=user,
            port=port,
            identity_file=identity_file,
            jump_host=jump_host,
            tmux_path=tmux_path,
            connect_timeout=connect_timeout,
        )
        path = ConfigManager.save_host(host_id, config, state.config_path)
        console.print(f"[green]✓[/green] Saved host [cyan]{host_id}[/cyan] to {path}")

    _run(console, "hosts add", body)


# ----------------------------------------------------------------------
# sessions
# ----------------------------------------------------------------------


@main.group(name="sessions")
def sessions_group() -> None:
    """Manage tmux sessions.

    \b
    Examples:
        tmuxlink sessions list --host build
        tmuxlink sessions new api --dir ~/src/api
        tmuxlink sessions capture api --lines 200
    """
    pass


@sessions_group.command(name="list")
@host_option
@click.pass_obj
def sessions_list(state: CliState, host_id: str | None) -> None:
    """List tmux sessions."""
    console = Console()

    def body() -> None:
        executor = state.executor(host_id)
        sessions = executor.list_sessions_with_info()
        if not sessions:
            console.print(f"[yellow]No tmux sessions on {executor.label}.[/yellow]")
            return

        table = Table(title=f"tmux Sessions ({executor.label})")
        table.add_column("Session", style="cyan")
        table.add_column("Directory")
        table.add_column("Last Activity", style="dim")
        for info in sorted(sessions, key=lambda s: s.activity, reverse=True):
            table.add_row(info.name, info.work_dir, _format_activity(info.activity))
        console.print(table)

    _run(console, "sessions list", body)


@sessions_group.command(name="new")
@click.argument("name")
@host_option
@click.option("--dir", "work_dir", help="Working directory for the session")
@click.option("--command", help="Command to run instead of the default shell")
@click.pass_obj
def sessions_new(
    state: CliState, name: str, host_id: str | None, work_dir: str | None, command: str | None
) -> None:
    """Create a detached tmux session."""
    console = Console()

    def body() -> None:
        executor = state.executor(host_id)
        executor.create(name, work_dir=work_dir, command=command)
        console.print(f"[green]✓[/green] Created session [cyan]{name}[/cyan] on {executor.label}")

    _run(console, "sessions new", body)


@sessions_group.command(name="kill")
@click.argument("name")
@host_option
@click.pass_obj
def sessions_kill(state: CliState, name: str, host_id: str | None) -> None:
    """Kill a tmux session."""
    console = Console()

    def body() -> None:
        executor = state.executor(host_id)
        executor.destroy(name)
        console.print(f"[green]✓[/green] Killed session [cyan]{name}[/cyan] on {executor.label}")

    _run(console, "sessions kill", body)


@sessions_group.command(name="capture")
@click.argument("name")
@host_option
@click.option("--lines", type=int, default=0, help="Include this many lines of scrollback")
@click.option("--escapes/--no-escapes", default=False, help="Keep color escape sequences")
@click.pass_obj
def sessions_capture(
    state: CliState, name: str, host_id: str | None, lines: int, escapes: bool
) -> None:
    """Print a session's screen (and optionally scrollback)."""
    console = Console()

    def body() -> None:
        executor = state.executor(host_id)
        if lines > 0:
            output = executor.capture_scrollback(name, lines, escapes=escapes)
        else:
            output = executor.capture_screen(name, escapes=escapes)
        click.echo(output, nl=False)

    _run(console, "sessions capture", body)


# ----------------------------------------------------------------------
# attach
# ----------------------------------------------------------------------


@main.command(name="attach")
@click.argument("name")
@host_option
@click.pass_obj
def attach_command(state: CliState, name: str, host_id: str | None) -> None:
    """Attach to a tmux session interactively.

    Press Ctrl+Q to detach; the session keeps running.
    """
    console = Console(stderr=True)

    def body() -> None:
        executor = state.executor(host_id)
        result = executor.interactive_attach(
            name, sys.stdin.buffer, sys.stdout.buffer, sys.stderr.buffer
        )
        if result.reason == "detached":
            console.print(f"[dim]Detached from {name} (session still running)[/dim]")

    _run(console, "attach", body)


if __name__ == "__main__":
    main()
