# runner.py
from __future__ import annotations

import os
import runpy
from pathlib import Path
from typing import Dict, List, Optional

from .errors import RetryExhausted, StepFailure, StepTimeout, StoreError, WorkflowError
from .locks import LockFactory, MemoryLockFactory
from .model import Job, JobContext, JobState, Step
from .retry import call_with_timeout, with_retry
from .store import StatusStore
from .ui.console import Console, get_console
from .watchdog import TIMEOUT_EXIT_CODE, run_watched

ENV_JOB = "DEVBOOT_JOB"
ENV_STORE = "DEVBOOT_STORE"


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]

    Returns:
      List[Job]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"devboot_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise WorkflowError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    return jobs


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def job_env(job: Job, store: StatusStore) -> Dict[str, str]:
    """Environment for a job's commands: ours + job.env + where to report."""
    env = os.environ.copy()
    env.update(job.env)
    env[ENV_JOB] = job.name
    env[ENV_STORE] = store.url
    return env


def make_context(
    job: Job,
    store: StatusStore,
    locks: Optional[LockFactory] = None,
    console: Optional[Console] = None,
) -> JobContext:
    return JobContext(
        job=job.name,
        env=job_env(job, store),
        store=store,
        locks=locks if locks is not None else MemoryLockFactory(),
        console=console if console is not None else get_console(),
    )


def _run_command(job: Job, step: Step, ctx: JobContext) -> None:
    cwd = None
    if step.cwd is not None:
        cwd = Path(step.cwd).expanduser().resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

    fired: Dict[str, float] = {}
    rc = run_watched(
        step.run,
        step.idle_timeout,
        timeout=step.timeout,
        on_line=lambda line: ctx.console.print_job_output(job.name, line),
        env=ctx.env,
        cwd=str(cwd) if cwd else None,
        on_timeout=fired.__setitem__,
    )
    if rc == TIMEOUT_EXIT_CODE:
        # a command may also exit 124 by itself
        cause, seconds = next(iter(fired.items()), (None, None))
        raise StepTimeout(job=job.name, step=step.name, seconds=seconds, cause=cause)
    if rc != 0:
        raise StepFailure(job=job.name, step=step.name, cmd=step.display, exit_code=rc)


def _call(job: Job, step: Step, ctx: JobContext) -> None:
    try:
        result = call_with_timeout(lambda: step.fn(ctx), step.timeout, label=step.name)
    except StepTimeout:
        raise StepTimeout(job=job.name, step=step.name, seconds=step.timeout, cause="total") from None
    if result is False:
        raise StepFailure(job=job.name, step=step.name, cmd=step.display, message="returned False")


def run_step(job: Job, step: Step, ctx: JobContext) -> None:
    """Run one step, through the retry wrapper when the step has a policy."""
    runner = _call if step.fn is not None else _run_command

    def attempt() -> None:
        runner(job, step, ctx)

    policy = step.retry
    if policy is None:
        attempt()
        return

    def on_retry(n: int, delay: float, err: BaseException) -> None:
        ctx.console.print_retry(job.name, step.name, n, policy.attempts, delay, str(err))

    with_retry(
        attempt,
        attempts=policy.attempts,
        backoff=policy.backoff,
        lock=ctx.locks(policy.lock) if policy.lock else None,
        lock_wait=policy.lock_wait,
        on_retry=on_retry,
        label=step.name,
    )


def execute_job(job: Job, ctx: JobContext) -> JobState:
    """
    Run every step of `job` in order and record the job's terminal marker.

    Returns the state held by the store afterwards, which is the job's own
    record unless something (the job's commands, or the scheduler) recorded
    first.
    """
    console = ctx.console
    console.print_job_start(job.name)

    state = JobState.DONE
    try:
        for step in job.steps:
            console.print_step(job.name, step.name)
            run_step(job, step, ctx)
    except StepTimeout as e:
        state = JobState.TIMED_OUT
        console.print_error("Step timed out", str(e))
    except RetryExhausted as e:
        state = JobState.TIMED_OUT if e.timed_out else JobState.FAILED
        console.print_error("Retries exhausted", f"[{job.name}] {e}")
    except StepFailure as e:
        state = JobState.FAILED
        console.print_error("Step failed", str(e))
    except Exception as e:
        state = JobState.FAILED
        console.print_exception(e)

    if not ctx.store.record_terminal(job.name, state):
        try:
            state = ctx.store.read_state(job.name)
        except StoreError as e:
            console.print_warning(str(e))
            state = JobState.FAILED
    console.print_job_finished(job.name, state.value)
    return state
