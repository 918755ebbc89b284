"""Diagnostic commands: classify, reconcile, doctor."""

import json
import sys
from typing import Optional

import click
from rich.table import Table

from stackloop.agent import AgentCli, AgentHarness
from stackloop.beads import Beads
from stackloop.branches import BranchManager
from stackloop.classifier import classify_failure
from stackloop.cli.common import console, get_config, setup_logging
from stackloop.git_utils import Git
from stackloop.graphite import Graphite
from stackloop.preflight import run_preflight
from stackloop.reconcile import Reconciler
from stackloop.resolver import Resolver


@click.command()
@click.argument("text")
@click.option("--step", default="UNKNOWN", help="Lifecycle step the failure came from")
@click.option("--exit-code", type=int, default=1, help="Exit code of the failing command")
@click.option("--no-model", is_flag=True, help="Heuristics only; never call the model")
def classify(text: str, step: str, exit_code: int, no_model: bool) -> None:
    """Classify failure output and print the result as JSON.

    Pass - as TEXT to read the output from stdin.
    """
    if text == "-":
        text = click.get_text_stream("stdin").read()

    harness: Optional[AgentHarness] = None
    model: Optional[str] = None
    if not no_model:
        config = get_config()
        harness = AgentHarness(AgentCli(config, cwd=config.repo), config)
        model = config.classifier_model

    result = classify_failure(step, exit_code, text, {}, harness=harness, model=model)
    click.echo(json.dumps(result.model_dump(mode="json"), indent=2))


@click.command()
@click.argument("task_id")
@click.option("--json", "as_json", is_flag=True, help="Print the decision as JSON")
def reconcile(task_id: str, as_json: bool) -> None:
    """Show what reconciliation would decide for TASK_ID (changes nothing)."""
    setup_logging()
    config = get_config()
    tracker = Beads(config.main_repo, actor=config.beads_actor)
    task = tracker.show(task_id)
    if task is None:
        console.print(f"[red]Error: task {task_id} not found[/red]")
        sys.exit(1)

    git = Git(config.repo)
    graphite = Graphite(config.repo)
    branches = BranchManager(git, graphite, config.base_branch)
    reconciler = Reconciler(tracker, git, graphite, branches, config.excluded_paths)
    epic = Resolver(tracker, git, max_depth=config.epic_max_depth).resolve_epic(task)

    checks = [
        ("task_status", reconciler.task_status(task)),
        ("pr", reconciler.pr_reconcile(task)),
        ("branch", reconciler.branch_reconcile(task, epic)),
    ]
    decision = reconciler.reconcile_all(task, epic)

    if as_json:
        payload = {
            "task": task.id,
            "epic": epic.id if epic else None,
            "decision": decision.to_dict(),
            "checks": {name: result.to_dict() for name, result in checks},
        }
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(title=f"Reconcile {task.id}: {task.title}")
    table.add_column("Check", style="cyan")
    table.add_column("Action")
    table.add_column("Reason")
    for name, result in checks:
        table.add_row(name, result.action.value, result.reason)
    console.print(table)
    console.print(f"Epic: {epic.id if epic else '[dim]none[/dim]'}")
    console.print(f"[bold]Decision:[/bold] {decision.action.value} ({decision.reason})")


@click.command()
def doctor() -> None:
    """Check that git, gt, bd and the agent CLI are ready.

    Validates that the environment is set up for the loop:
    - the execution repo is a git working tree
    - gt and bd are installed and the main repo has a Beads database
    - the agent CLI and the validation command's program exist
    """
    config = get_config()
    console.print("[bold]Running preflight checks...[/bold]\n")

    results = run_preflight(config)
    all_passed = True

    for result in results:
        if result.passed:
            console.print(f"[green]✓[/green] {result.name}: {result.message}")
        else:
            console.print(f"[red]✗[/red] {result.name}: {result.message}")
            if result.fix_hint:
                console.print(f"  [dim]Hint: {result.fix_hint}[/dim]")
            all_passed = False

    console.print("")

    if all_passed:
        console.print("[green]✓ All preflight checks passed[/green]")
        sys.exit(0)
    else:
        console.print("[red]✗ Some preflight checks failed[/red]")
        sys.exit(1)
