# cli.py
from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import click
from pydantic import ValidationError

from devboot.errors import BootstrapError
from devboot.locks import open_locks
from devboot.model import JobState
from devboot.reporter import Reporter, render
from devboot.runner import load_workflow
from devboot.scheduler import orchestrate
from devboot.settings import Settings
from devboot.store import open_store
from devboot.ui.console import Console, get_console, set_console
from devboot.watchdog import run_watched

DEFAULT_WORKFLOW = "devboot_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  devboot run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  devboot run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  devboot run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def load_settings(**overrides) -> Settings:
    try:
        return Settings.from_env(**overrides)
    except ValidationError as e:
        get_console().print_error(
            "Invalid configuration",
            "Settings from DEVBOOT_* environment variables or options are invalid.",
            details=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        )
        sys.exit(2)


def _fail(exc: BaseException) -> None:
    get_console().print_exception(exc)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """devboot: bootstrap orchestration for disposable dev sandboxes."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--store", default=None, help="Status store URL or directory [env: DEVBOOT_STORE]")
@click.option("--locks", default=None, help="Lock directory or redis:// URL [env: DEVBOOT_LOCKS]")
@click.option("--deadline", default=None, type=float, help="Global deadline in seconds [env: DEVBOOT_DEADLINE]")
@click.option("--poll-interval", default=None, type=float, help="Scheduler poll interval in seconds")
@click.option("--report-interval", default=None, type=float, help="Progress report interval in seconds")
@click.option("--idle-timeout", default=None, type=float, help="Idle timeout for shell steps that do not set one [env: DEVBOOT_IDLE_TIMEOUT, default 20]")
@click.option("--resume", is_flag=True, default=False, help="Keep existing status markers; finished jobs are not rerun")
@click.pass_context
def run(ctx, workflow, store, locks, deadline, poll_interval, report_interval, idle_timeout, resume):
    """Run a devboot workflow."""
    console = get_console()
    settings = load_settings(
        store=store,
        locks=locks,
        deadline=deadline,
        poll_interval=poll_interval,
        report_interval=report_interval,
        idle_timeout=idle_timeout,
    )
    workflow_path = discover_workflow(workflow)

    try:
        jobs = load_workflow(workflow_path)
        # shell steps without their own window get the configured one
        for j in jobs:
            j.steps = [
                s if s.fn is not None or s.idle_timeout is not None else replace(s, idle_timeout=settings.idle_timeout)
                for s in j.steps
            ]

        status_store = open_store(settings.store)
        console.print_run_started(
            workflow=workflow_path.name,
            job_count=len(jobs),
            store=status_store.url,
            deadline=settings.deadline,
        )

        result = orchestrate(
            jobs,
            status_store,
            deadline=settings.deadline,
            poll_interval=settings.poll_interval,
            report_interval=settings.report_interval,
            locks=open_locks(settings.locks),
            console=console,
            resume=resume,
        )

        console.print_results(result)

        if result.critical_failed:
            console.print_error(
                "Critical job failed",
                f"Cannot continue without: {', '.join(result.critical_failed)}",
            )
        sys.exit(result.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (BootstrapError, OSError, ValueError) as e:
        _fail(e)


@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option("--idle-timeout", default=None, type=float, help="Seconds without output before the command is killed (default 20)")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def watch(idle_timeout, command):
    """Run COMMAND, killing it after IDLE-TIMEOUT seconds without output (exit 124)."""
    console = get_console()
    if not command:
        console.print_error(
            "No command given",
            "Usage: devboot watch [--idle-timeout N] -- COMMAND [ARGS...]",
        )
        sys.exit(2)

    settings = load_settings(idle_timeout=idle_timeout)
    try:
        rc = run_watched(list(command), settings.idle_timeout)
    except FileNotFoundError as e:
        console.print_error("Command not found", str(e))
        sys.exit(127)
    sys.exit(rc)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--store", default=None, help="Status store URL or directory [env: DEVBOOT_STORE]")
@click.pass_context
def status(ctx, workflow, store):
    """Show the recorded state of every job in the workflow."""
    console = get_console()
    settings = load_settings(store=store)
    workflow_path = discover_workflow(workflow)

    try:
        jobs = load_workflow(workflow_path)
        reporter = Reporter(open_store(settings.store), [j.name for j in jobs], console=console)
        snap = reporter.snapshot()
    except (BootstrapError, OSError, ValueError) as e:
        _fail(e)
        return

    console.print_header(f"STATUS: {workflow_path.name}")
    console.print_info(render(snap))
    for name, state in snap.states.items():
        console.print_info(f"  {name}: {state.name.replace('_', ' ')}")
    if snap.complete:
        console.print_info("All jobs reached a terminal state.")


@cli.command()
@click.argument("job_name")
@click.argument("state", type=click.Choice(["done", "failed", "timeout", "error"], case_sensitive=False))
@click.option("--store", default=None, help="Status store URL or directory [env: DEVBOOT_STORE]")
@click.pass_context
def mark(ctx, job_name, state, store):
    """Record JOB_NAME's terminal STATE (for shell jobs reporting on themselves)."""
    console = get_console()
    settings = load_settings(store=store)
    try:
        status_store = open_store(settings.store)
        wanted = JobState.from_token(state)
        if status_store.record_terminal(job_name, wanted):
            console.print_info(f"{job_name}: {wanted.value}")
        else:
            console.print_info(
                f"{job_name}: already recorded as {status_store.read_state(job_name).value}"
            )
    except (BootstrapError, OSError, ValueError) as e:
        _fail(e)


@cli.command()
@click.option("--store", default=None, help="Status store URL or directory [env: DEVBOOT_STORE]")
@click.pass_context
def clear(ctx, store):
    """Remove every status marker (what `run` does before starting)."""
    settings = load_settings(store=store)
    try:
        status_store = open_store(settings.store)
        status_store.clear()
    except (BootstrapError, OSError, ValueError) as e:
        _fail(e)
        return
    get_console().print_info(f"Cleared status markers in {status_store.url}")


if __name__ == "__main__":
    cli()
