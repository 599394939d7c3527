# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
import threading
from pathlib import Path

import click

from .config import Settings, configure_logging
from .environment import CancelToken
from .errors import ConfigurationError
from .git import current_branch, head_sha, repo_root
from .model import EventKind, TriggerEvent
from .runner import plan, run_pipeline, select
from .schema import LoadedPipeline, load_definition_file
from .triggers import TriggerEvaluator
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("dagci.json", "dagci_workflow.py")


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    found = [directory / name for name in DEFAULT_WORKFLOWS if (directory / name).exists()]
    if found:
        return found
    return sorted(directory.glob("*_workflow.py"))


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from --workflow or the current directory.
    Exits with status 2 if none (or more than one) is found.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify a different path:\n  dagci run --workflow path/to/dagci.json",
            )
            sys.exit(2)
        return workflow_path

    workflow_files = find_workflow_files()
    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Specify a workflow explicitly:\n  dagci run --workflow my_workflow.py",
        )
        sys.exit(2)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  dagci run --workflow dagci.json",
        )
        sys.exit(2)

    return workflow_files[0]


def _load(workflow: str | None) -> LoadedPipeline:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return load_definition_file(workflow_path)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", f"Could not load {workflow_path}", details=str(e).splitlines())
        sys.exit(2)
    except Exception as e:
        console.print_error("Could not load workflow", f"{workflow_path}: {e}")
        if console.debug:
            console.print_exception(e)
        sys.exit(2)


def _event(kind: str | None, branch: str | None, action: str | None) -> TriggerEvent | None:
    if kind is None:
        return None
    if branch is None:
        branch = current_branch() or ""
    return TriggerEvent(kind=kind, branch=branch, action=action)


def _install_cancel_handlers(cancel: CancelToken) -> dict:
    """
    First SIGINT/SIGTERM cancels the run cooperatively; a second SIGINT interrupts.
    Returns the previous handlers for restore_handlers().
    """
    console = get_console()
    if threading.current_thread() is not threading.main_thread():
        return {}

    def handler(signum, frame):
        if cancel.cancelled:
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        console.print_info(f"\nReceived signal {signum}, cancelling run...")
        # cancel() signals child processes; keep that off the signal frame
        threading.Thread(target=cancel.cancel, daemon=True).start()

    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    for sig in previous:
        signal.signal(sig, handler)
    return previous


def restore_handlers(previous: dict) -> None:
    for sig, h in previous.items():
        signal.signal(sig, h)


event_options = [
    click.option("--event", "event_kind", type=click.Choice([k.value for k in EventKind]), default=None,
                 help="Triggering event kind (omit for a manual run)"),
    click.option("--branch", default=None, help="Event branch (defaults to the current git branch)"),
    click.option("--action", default=None, help="pull_request action, e.g. opened / synchronize"),
]


def with_event_options(fn):
    for opt in reversed(event_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show step output, debug logs and stack traces")
@click.pass_context
def cli(ctx, debug):
    """dagci: run CI job graphs locally, with isolation and caching."""
    settings = Settings.from_env()
    configure_logging(settings.log_level, debug=debug)
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.json or .py)")
@with_event_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max jobs running at once")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--work-dir", default=None, help="Directory for per-job workspaces")
@click.option("--in-place", is_flag=True, default=False, help="Run jobs in the source tree instead of fresh workspaces")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop dispatching jobs after the first failure")
@click.option("--job", "only", multiple=True, help="Run only this job (and what it needs); repeatable")
@click.pass_context
def run(ctx, workflow, event_kind, branch, action, workers, cache_dir, work_dir, in_place, fail_fast, only):
    """Run a pipeline."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(workers=workers, cache_dir=cache_dir, work_dir=work_dir)
    loaded = _load(workflow)
    event = _event(event_kind, branch, action)

    try:
        source = repo_root()
        commit = head_sha(source)
    except (subprocess.CalledProcessError, FileNotFoundError):
        source, commit = Path(".").resolve(), None

    cancel = CancelToken()
    previous = _install_cancel_handlers(cancel)

    try:
        definition = select(loaded.definition, only)

        def announce(decision, graph):
            if event is not None:
                console.print_trigger(decision)
            console.print_run_started(definition.name, len(graph), str(source), commit)

        outcome = run_pipeline(
            definition,
            event=event,
            triggers=loaded.triggers,
            settings=settings,
            source=source,
            in_place=in_place,
            fail_fast=fail_fast,
            cancel=cancel,
            on_run_start=announce,
            on_job_start=console.print_job_start,
            on_step=console.print_step,
            on_result=[console.print_job_result],
        )
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e), details=[f"job: {j}" for j in e.jobs])
        sys.exit(2)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        restore_handlers(previous)

    if outcome.result is None:
        console.print_trigger(outcome.decision)
    else:
        console.print_results(outcome.result)
    sys.exit(outcome.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.json or .py)")
def check(workflow):
    """Validate a pipeline and print its stages."""
    console = get_console()
    loaded = _load(workflow)
    try:
        levels = plan(loaded.definition)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e), details=[f"job: {j}" for j in e.jobs])
        sys.exit(2)

    console.print_plan(levels)
    unknown = loaded.triggers.unknown_actions()
    if unknown:
        console.print_info(f"WARNING: pull_request trigger lists unknown action(s): {', '.join(unknown)}")
    console.print_info("OK")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.json or .py)")
@with_event_options
def trigger(workflow, event_kind, branch, action):
    """Show whether an event would start a run."""
    console = get_console()
    loaded = _load(workflow)
    event = _event(event_kind or EventKind.PUSH.value, branch, action)
    decision = TriggerEvaluator(loaded.triggers).evaluate(event)
    console.print_trigger(decision)
    sys.exit(0 if decision.admitted else 1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
