"""Autopilot CLI for daemon management and automation inspection.

Provides simple commands to start, stop and inspect the autopilot daemon,
and to list automations and runs straight from workspace storage.
"""

import builtins
import contextlib
import subprocess
import sys
import time
from pathlib import Path

import click
import psutil

from autopilot_library.automations.store import AutomationStore
from autopilot_library.config import load_config
from autopilot_library.storage.paths import get_log_dir
from autopilot_library.workspaces import WorkspaceRegistry


def find_daemon_processes() -> list[psutil.Process]:
    """Find all running daemon processes.

    Looks for processes matching 'python -m autopilotd' pattern.
    Excludes the CLI itself and verifies processes are alive.

    Returns:
        List of daemon Process objects
    """
    current_pid = psutil.Process().pid
    daemon_processes = []

    for proc in psutil.process_iter(["pid", "cmdline", "status"]):
        try:
            if proc.info["pid"] == current_pid:
                continue

            if proc.info["status"] in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
                continue

            cmdline = proc.info["cmdline"]
            if not cmdline or len(cmdline) < 2:
                continue

            is_python = "python" in cmdline[0].lower()
            if not is_python or "-m" not in cmdline:
                continue

            # Verify it's the actual module, not just in a path
            module_index = cmdline.index("-m") + 1
            if (
                module_index < len(cmdline)
                and cmdline[module_index] == "autopilotd"
                and proc.is_running()
                and proc.status() != psutil.STATUS_ZOMBIE
            ):
                daemon_processes.append(proc)

        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError, IndexError):
            continue

    return daemon_processes


def get_daemon_status() -> tuple[bool, int | None]:
    """Check if daemon is running.

    Returns:
        Tuple of (is_running, pid)
    """
    processes = find_daemon_processes()
    if processes:
        return True, processes[0].pid
    return False, None


def stop_process(proc: psutil.Process, name: str, timeout: int = 5) -> bool:
    """Stop a process gracefully.

    Active runs are recorded as cancelled by the daemon's shutdown, so a
    terminate is always tried before a kill.

    Returns:
        True if stopped successfully
    """
    try:
        click.echo(f"Stopping {name} (PID {proc.pid})...")
        proc.terminate()

        try:
            proc.wait(timeout=timeout)
            click.echo(f"{name} stopped successfully")
            return True
        except psutil.TimeoutExpired:
            click.echo(f"{name} did not stop gracefully, force killing...")
            proc.kill()
            proc.wait(timeout=2)
            click.echo(f"{name} force killed")
            return True

    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        click.echo(f"Failed to stop {name}: {e}", err=True)
        return False


def resolve_workspace_root(workspace: str) -> Path:
    registry = WorkspaceRegistry.from_settings(load_config())
    root = registry.root_path(workspace)
    if root is None:
        raise click.ClickException(f"Workspace not found: {workspace}")
    return root


@click.group()
def cli():
    """Autopilot - trigger-driven agent automations."""
    pass


@cli.command()
def start():
    """Start the daemon in the background."""
    daemon_log = get_log_dir() / "daemon.log"

    daemon_running, daemon_pid = get_daemon_status()
    if daemon_running:
        click.echo(f"Daemon already running (PID {daemon_pid})")
        return

    click.echo("Starting daemon...")
    with builtins.open(str(daemon_log), "a") as log_file:
        subprocess.Popen(
            [sys.executable, "-m", "autopilotd"],
            stdout=log_file,
            stderr=log_file,
            start_new_session=True,
        )

    for _ in range(10):
        time.sleep(0.5)
        daemon_running, daemon_pid = get_daemon_status()
        if daemon_running:
            click.echo(f"Daemon started (PID {daemon_pid}, logs: {daemon_log})")
            break
    else:
        click.echo("Warning: Daemon may not have started successfully", err=True)


@cli.command()
def stop():
    """Stop the daemon."""
    daemon_processes = find_daemon_processes()
    if not daemon_processes:
        click.echo("Daemon not running")
        return

    for proc in daemon_processes:
        stop_process(proc, "daemon")


@cli.command()
@click.pass_context
def restart(ctx):
    """Restart the daemon."""
    click.echo("Restarting daemon...")
    ctx.invoke(stop)
    time.sleep(2)
    ctx.invoke(start)


@cli.command()
def status():
    """Show running status of the daemon."""
    daemon_running, daemon_pid = get_daemon_status()

    click.echo("Autopilot Status:")
    click.echo("-" * 40)

    if daemon_running:
        config = load_config()
        click.echo(f"Daemon:  ✓ Running (PID {daemon_pid})")
        click.echo(f"URL:     http://{config.host}:{config.port}")
    else:
        click.echo("Daemon:  ✗ Not running")


@cli.command()
@click.option("-f", "--follow", is_flag=True, help="Follow log output (like tail -f)")
@click.option("-n", "--lines", default=50, help="Number of lines to show")
def logs(follow: bool, lines: int):
    """View daemon logs."""
    log_file = get_log_dir() / "daemon.log"
    if not log_file.exists():
        click.echo(f"No logs found at {log_file}")
        return

    if follow:
        with contextlib.suppress(KeyboardInterrupt):
            subprocess.run(["tail", "-f", str(log_file)])
        return

    with builtins.open(log_file) as f:
        for line in f.readlines()[-lines:]:
            click.echo(line.rstrip())


@cli.command("list")
@click.option("-w", "--workspace", default="default", help="Workspace id or name")
@click.option("--enabled/--disabled", default=None, help="Filter by enabled status")
def list_automations(workspace: str, enabled: bool | None):
    """List automations in a workspace."""
    root = resolve_workspace_root(workspace)
    automations = AutomationStore().list_automations(root, enabled=enabled)

    if not automations:
        click.echo("No automations")
        return

    for automation in automations:
        state = "on " if automation.enabled else "off"
        last = automation.last_status or "-"
        click.echo(
            f"[{state}] {automation.id}  {automation.name}  "
            f"({automation.trigger_config.type}, runs: {automation.run_count}, last: {last})"
        )


@cli.command()
@click.argument("automation_id", required=False)
@click.option("-w", "--workspace", default="default", help="Workspace id or name")
@click.option("-n", "--limit", default=20, help="Number of runs to show")
def runs(automation_id: str | None, workspace: str, limit: int):
    """Show run history, newest first."""
    root = resolve_workspace_root(workspace)
    records = AutomationStore().list_runs(root, automation_id, limit=limit)

    if not records:
        click.echo("No runs")
        return

    for run in records:
        line = f"{run.started_at:%Y-%m-%d %H:%M:%S}  {run.status:<9}  {run.triggered_by:<13}  {run.id}"
        if run.error:
            line += f"  ({run.error})"
        click.echo(line)


def main():
    """Entry point for autopilot CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
