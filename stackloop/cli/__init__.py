"""CLI for stackloop."""

import click


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """stackloop: autonomous coding-agent loop over stacked branches

    Picks ready tasks from Beads, drives an AI agent through implement,
    validate, review and check, and submits each task as a Graphite PR.
    """
    pass


# Import and register command modules
from stackloop.cli import loop
from stackloop.cli import diagnose
from stackloop.cli import worktree

# Loop commands
main.add_command(loop.run)
main.add_command(loop.status)
main.add_command(loop.unlock)

# Diagnostic commands
main.add_command(diagnose.classify)
main.add_command(diagnose.reconcile)
main.add_command(diagnose.doctor)

# Worktree group
main.add_command(worktree.worktree)
