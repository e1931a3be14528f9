# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from .dag import check_acyclic
from .definition import load_workflow
from .errors import DefinitionError, FlowError
from .git_facts.git import trigger_facts
from .matrix import expand
from .model import WorkflowDefinition
from .runner import run_workflow
from .settings import Settings
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("flowci_workflow.py", "flowci_workflow.json")


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        flowci_workflow.py / flowci_workflow.json plus any *_workflow.py
        or *_workflow.json, sorted
    """
    found = {p for p in directory.glob("*_workflow.py")}
    found |= {p for p in directory.glob("*_workflow.json")}
    for name in DEFAULT_WORKFLOW_FILES:
        candidate = directory / name
        if candidate.exists():
            found.add(candidate)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the --workflow argument or by discovery.

    Raises:
        SystemExit: no workflow found, or more than one candidate
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  flowci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  flowci_workflow.py / flowci_workflow.json", "  *_workflow.py / *_workflow.json"],
            suggestion="Create flowci_workflow.py or specify a workflow explicitly:\n  flowci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  flowci run --workflow flowci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(workflow_arg: Optional[str]) -> WorkflowDefinition:
    console = get_console()
    path = discover_workflow(workflow_arg)
    try:
        definition = load_workflow(path)
    except DefinitionError as e:
        console.print_error("Invalid workflow", f"{path}: {e.message}", details=e.problems or None)
        sys.exit(1)
    console.print_debug(f"loaded {path} ({len(definition.jobs)} job(s))")
    return definition


def _parse_inputs(values: tuple[str, ...]) -> Dict[str, str]:
    inputs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--input")
        inputs[key.strip()] = value
    return inputs


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=None,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print warnings, errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """flowci: run CI/CD workflows locally with needs, matrices and concurrency groups."""
    try:
        settings = Settings.from_env()
    except ValueError as e:
        raise click.UsageError(str(e))
    if debug is None:
        debug = settings.debug
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to flowci_workflow.py if present)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Size of the worker pool [env: FLOWCI_WORKERS]")
@click.option("--label", "labels", multiple=True, help="Capability label offered by every worker (repeatable) [env: FLOWCI_RUNNER_LABELS]")
@click.option("--home", default=None, help="Directory for workspaces, cache and artifacts [env: FLOWCI_HOME]")
@click.option("--event", default="workflow_dispatch", show_default=True, help="Trigger event name")
@click.option("--ref", default=None, help="Git ref for the trigger (defaults to the current branch)")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Workflow input (repeatable)")
@click.option("--payload", type=click.Path(exists=True, dir_okay=False), default=None, help="JSON file with the raw event payload")
@click.option("--compare-ref", default=None, help="Git ref to diff against for trigger path filters")
@click.option("--force", is_flag=True, default=False, help="Run even if the workflow's triggers do not match the event")
@click.option("--events-file", default=None, type=click.Path(dir_okay=False), help="Append transition events to this JSON-lines file")
@click.option("--events-url", default=None, help="POST transition events to this collector [env: FLOWCI_EVENTS_URL]")
@click.pass_context
def run(ctx, workflow, workers, labels, home, event, ref, inputs, payload, compare_ref, force, events_file, events_url):
    """Run a flowci workflow."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    definition = _load(workflow)

    facts = trigger_facts(compare_ref)
    trigger: Dict[str, Any] = {
        "event_name": event,
        "ref": ref or facts["ref"],
        "sha": facts["sha"],
        "inputs": _parse_inputs(inputs),
        "event": {},
    }
    if payload:
        try:
            trigger["event"] = json.loads(Path(payload).read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            console.print_error("Invalid event payload", f"{payload} is not valid JSON", details=[str(e)])
            sys.exit(1)

    if not force and not definition.triggered_by(event, trigger["ref"], facts["changed_files"]):
        where = f" on {trigger['ref']}" if trigger["ref"] else ""
        console.print_info(f"Workflow '{definition.name}' is not triggered by {event}{where}; nothing to do.")
        return

    try:
        result = run_workflow(
            definition,
            settings=settings,
            workers=workers,
            runner_labels=list(labels) or None,
            home=home,
            trigger=trigger,
            events_file=events_file,
            events_url=events_url,
        )
    except FlowError as e:
        console.print_error(e.kind, e.message, details=[f"{k}={v}" for k, v in e.details.items()] or None)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result.snapshot)

    if result.interrupted:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    if result.conclusion != "success":
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to flowci_workflow.py if present)")
def validate(workflow):
    """Check a workflow definition without running it."""
    definition = _load(workflow)
    instances = sum(len(expand(t)) for t in definition.jobs.values())
    get_console().print_info(
        f"OK: workflow '{definition.name}' with {len(definition.jobs)} job(s), {instances} instance(s)"
    )


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to flowci_workflow.py if present)")
def plan(workflow):
    """Print the stages of a workflow and the instances each job expands to."""
    console = get_console()
    definition = _load(workflow)

    stages = check_acyclic({name: t.needs for name, t in definition.jobs.items()})
    rows: List[List[str]] = []
    for stage in stages:
        row: List[str] = []
        for name in stage:
            instances = expand(definition.job(name))
            if not instances:
                row.append(f"{name} (no matrix points: skipped)")
            else:
                row.extend(i.id for i in instances)
        rows.append(row)
    console.print_plan(rows)


if __name__ == "__main__":
    cli()
