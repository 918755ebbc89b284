"""Loop commands: run, status, unlock."""

import sys
from datetime import datetime

import click
from rich.table import Table

from stackloop.cli.common import console, get_config, setup_logging
from stackloop.orchestrator import Orchestrator
from stackloop.state import FileStateStore, pid_alive


def _format_ts(ts: float) -> str:
    if not ts:
        return "never"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
@click.option("--once", is_flag=True, help="Run a single iteration and exit")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(once: bool, verbose: bool) -> None:
    """Run the orchestration loop.

    Holds a per-worktree lock for as long as it runs. Stop it with Ctrl-C or
    SIGTERM; the lock and current-task marker are released on the way out.
    """
    setup_logging(verbose)
    config = get_config()
    if not config.validate_cmd:
        console.print("[red]Error: no validation command configured (set VALIDATE_CMD)[/red]")
        sys.exit(1)

    console.print(f"[bold]stackloop[/bold] on [cyan]{config.repo}[/cyan] (base {config.base_branch})")
    orchestrator = Orchestrator.from_config(config)
    orchestrator.install_signal_handlers()
    sys.exit(orchestrator.run_forever(once=once))


@click.command()
def status() -> None:
    """Show lock holder, current task and failure counters."""
    config = get_config()
    store = FileStateStore.for_worktree(config.state_dir, config.repo)
    state = store.load()

    table = Table(title=f"stackloop: {config.repo}")
    table.add_column("Item", style="cyan")
    table.add_column("Value")

    if state.lock is None:
        table.add_row("Lock", "[dim]free[/dim]")
    else:
        alive = "alive" if pid_alive(state.lock.pid) else "[red]dead[/red]"
        table.add_row("Lock", f"pid {state.lock.pid} ({alive}) since {_format_ts(state.lock.acquired_at)}")
    table.add_row("Current task", state.current_task or "[dim]none[/dim]")
    table.add_row("Last sync", _format_ts(state.last_sync))
    counts = state.failure_counts()
    table.add_row("Failure counters", ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "[dim]none[/dim]")
    console.print(table)

    if state.health_log:
        health = Table(title="Recent infrastructure failures")
        health.add_column("When", style="dim")
        health.add_column("Reason")
        for record in state.health_log[-10:]:
            health.add_row(_format_ts(record.ts), record.reason)
        console.print(health)


@click.command()
@click.option("--force", is_flag=True, help="Remove the lock even if its holder is alive")
@click.option("--keep-marker", is_flag=True, help="Keep the current-task marker so the task resumes")
def unlock(force: bool, keep_marker: bool) -> None:
    """Remove a stale lock (and by default the current-task marker)."""
    config = get_config()
    store = FileStateStore.for_worktree(config.state_dir, config.repo)
    holder = store.load().lock
    if holder is not None and pid_alive(holder.pid) and not force:
        console.print(f"[red]Lock is held by live pid {holder.pid}; use --force to remove it anyway[/red]")
        sys.exit(1)

    with store.transaction() as state:
        state.lock = None
        if not keep_marker:
            state.current_task = None
    console.print("[green]✓ Lock removed[/green]")
