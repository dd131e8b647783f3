# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import click

from ciengine import settings
from ciengine.actions import ActionResolver, DirectoryFetcher
from ciengine.cache import ActionCache, CachingFetcher
from ciengine.coordinator import RunCoordinator
from ciengine.dag import job_levels
from ciengine.errors import ConfigError
from ciengine.executor import StepExecutor, reject_external, stub_external
from ciengine.git_facts.git import current_ref, head_sha, is_dirty, repo_root
from ciengine.loader import load_workflow
from ciengine.matrix import expand_template
from ciengine.model import Event, RunStatus, WorkflowDefinition
from ciengine.process import default_runner
from ciengine.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2

EXTERNAL_RUNNERS = {"stub": stub_external, "fail": reject_external}


def _config_error(e: ConfigError, what: str) -> NoReturn:
    get_console().print_error(
        f"Invalid {what}",
        e.message,
        details=[f"at: {e.where}"] if e.where else None,
    )
    sys.exit(EXIT_CONFIG)


def _load(workflow: str) -> WorkflowDefinition:
    try:
        return load_workflow(workflow)
    except ConfigError as e:
        _config_error(e, "workflow")


def _git_facts(workspace: Path) -> Dict[str, Any]:
    """Best-effort ref/sha of the workspace checkout; empty outside a repo."""
    console = get_console()
    try:
        facts = {"ref": current_ref(cwd=workspace), "sha": head_sha(cwd=workspace)}
        if is_dirty(cwd=workspace):
            console.print_debug("working tree has uncommitted changes")
        return facts
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_debug(f"{workspace} is not a git checkout; ref defaults to empty")
        return {}


def _default_workspace() -> Path:
    try:
        return repo_root()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve()


def _resolver(workspace: Path, actions_dir: Optional[str], cache_dir: Optional[str]) -> ActionResolver:
    fetcher = CachingFetcher(
        DirectoryFetcher(Path(actions_dir) if actions_dir else workspace / settings.ACTIONS_DIR),
        ActionCache(Path(cache_dir) if cache_dir else workspace / settings.CACHE_DIR),
        keep=settings.CACHE_KEEP,
    )
    return ActionResolver(workspace, fetcher=fetcher, max_depth=settings.MAX_ACTION_DEPTH)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """ciengine: event-driven CI pipeline engine."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", required=True, help="Workflow file (.yml/.yaml or .py)")
@click.option("--event", "event_kind", required=True, help="Event kind, e.g. pull_request")
@click.option("--subtype", default=None, help="Event subtype, e.g. synchronize")
@click.option("--ref", default=None, help="Git ref of the event (defaults to the current checkout)")
@click.option("--workers", default=None, type=int, help="Number of parallel job workers")
@click.option("--workspace", default=None, help="Directory steps run in (defaults to the repo root)")
@click.option("--actions-dir", default=None, help="Local mirror of external actions")
@click.option("--cache-dir", default=None, help="Action definition cache directory")
@click.option(
    "--external",
    type=click.Choice(sorted(EXTERNAL_RUNNERS)),
    default="fail",
    show_default=True,
    help="What to do with external actions that have no local definition",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run outcome as JSON")
@click.pass_context
def run(ctx, workflow, event_kind, subtype, ref, workers, workspace, actions_dir, cache_dir, external, as_json):
    """Handle one event against a workflow and run it to completion."""
    if as_json:
        set_console(Console(debug=ctx.obj.get("debug", False), quiet=True))
    console = get_console()

    wf = _load(workflow)
    workspace_p = Path(workspace).resolve() if workspace else _default_workspace()
    facts = _git_facts(workspace_p)
    event = Event(
        kind=event_kind,
        subtype=subtype,
        ref=ref if ref is not None else facts.get("ref", ""),
        payload={"sha": facts["sha"]} if "sha" in facts else {},
    )

    executor = StepExecutor(
        resolver=_resolver(workspace_p, actions_dir, cache_dir),
        command_runner=default_runner(),
        external_runner=EXTERNAL_RUNNERS[external],
        workspace=workspace_p,
    )
    coordinator = RunCoordinator(wf, executor, max_workers=workers)

    try:
        outcome = coordinator.handle(event)
    except ConfigError as e:
        _config_error(e, "workflow")
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if outcome is None:
        if as_json:
            click.echo(json.dumps({"triggered": False}))
        sys.exit(EXIT_FAILED)

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), indent=2))
    if outcome.status is not RunStatus.SUCCEEDED:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", required=True, help="Workflow file (.yml/.yaml or .py)")
def plan(workflow):
    """Print the job instances each job template expands to."""
    console = get_console()
    wf = _load(workflow)

    console.print_header(f"PLAN: {wf.name}")
    if wf.concurrency and wf.concurrency.group:
        console.print_info(
            f"Concurrency group: {wf.concurrency.group} "
            f"(cancel-in-progress={str(wf.concurrency.cancel_in_progress).lower()}, "
            f"queue={wf.concurrency.queue_policy})"
        )
    try:
        for i, level in enumerate(job_levels(wf.jobs)):
            names = []
            for tid in level:
                names.extend(j.name for j in expand_template(wf.jobs[tid], wf.env))
            console.print_plan_level(i, names)
    except ConfigError as e:
        _config_error(e, "workflow")


@cli.command()
@click.option("--workflow", required=True, help="Workflow file (.yml/.yaml or .py)")
@click.option("--workspace", default=None, help="Directory local actions are resolved from")
@click.option("--actions-dir", default=None, help="Local mirror of external actions")
@click.option("--cache-dir", default=None, help="Action definition cache directory")
def validate(workflow, workspace, actions_dir, cache_dir):
    """Load a workflow and resolve every action it uses."""
    console = get_console()
    wf = _load(workflow)
    workspace_p = Path(workspace).resolve() if workspace else _default_workspace()
    resolver = _resolver(workspace_p, actions_dir, cache_dir)

    count = 0
    try:
        for tid, template in wf.jobs.items():
            for job in expand_template(template, wf.env):
                count += resolver.validate(job.steps)
    except ConfigError as e:
        _config_error(e, "action")

    console.print_info(f"OK: {wf.name} ({len(wf.jobs)} job(s), {count} action reference(s) resolved)")


if __name__ == "__main__":
    cli()
