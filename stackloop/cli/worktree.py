"""Per-epic worktree commands."""

import sys

import click
from rich.table import Table

from stackloop.beads import Beads
from stackloop.cli.common import console, get_config
from stackloop.commands import CommandError
from stackloop.worktree import WorktreeManager


@click.group()
def worktree() -> None:
    """Manage per-epic git worktrees."""
    pass


@worktree.command("add")
@click.argument("epic_id")
def add(epic_id: str) -> None:
    """Create (or reuse) the worktree for EPIC_ID and print its path."""
    manager = WorktreeManager(get_config())
    try:
        path = manager.add(epic_id)
    except CommandError as e:
        console.print(f"[red]Error creating worktree: {e.output.strip() or e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Worktree for {epic_id}:[/green] {path}")
    console.print(f"[dim]Run the loop there with: cd {path} && stackloop run[/dim]")


@worktree.command("list")
def list_worktrees() -> None:
    """List managed worktrees."""
    manager = WorktreeManager(get_config())
    entries = manager.list()
    if not entries:
        console.print("[dim]No worktrees[/dim]")
        return

    table = Table(title="Worktrees")
    table.add_column("Name", style="cyan")
    table.add_column("Branch")
    table.add_column("HEAD", style="dim")
    table.add_column("Path")
    for info in entries:
        branch = info.branch or ("(detached)" if info.detached else "")
        table.add_row(info.name, branch, info.head[:10], str(info.path))
    console.print(table)


@worktree.command("prune")
def prune() -> None:
    """Remove worktrees whose epic is closed."""
    config = get_config()
    manager = WorktreeManager(config)
    removed = manager.prune(Beads(config.main_repo, actor=config.beads_actor))
    if removed:
        for name in removed:
            console.print(f"[green]✓ Removed {name}[/green]")
    else:
        console.print("[dim]Nothing to prune[/dim]")
