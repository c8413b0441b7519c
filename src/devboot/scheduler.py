# scheduler.py
# Dependency-aware fan-out of setup jobs, driven by polling the status store.
#
# Each tick:
#   1. jobs whose handle finished without leaving a marker get one recorded
#      on their behalf
#   2. jobs past their own deadline are recorded TIMED_OUT (and abandoned)
#   3. pending jobs with a FAILED/TIMED_OUT dependency are recorded FAILED
#      without running
#   4. pending jobs whose dependencies are all DONE are launched
#
# The loop ends when every job is terminal or the global deadline passes.
# Already-running jobs are never cancelled by the global deadline.

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from .dag import topo_order
from .errors import DependencyFailed, StoreError
from .locks import LockFactory, MemoryLockFactory
from .model import Job, JobState
from .reporter import Reporter
from .runner import execute_job, make_context
from .store import StatusStore, read_all
from .ui.console import Console, get_console

DEFAULT_DEADLINE = 300.0
DEFAULT_POLL_INTERVAL = 3.0


@dataclass
class RunResult:
    """Final view of one orchestration run."""
    states: Dict[str, JobState]
    reasons: Dict[str, str] = field(default_factory=dict)
    completed: bool = False
    deadline_exceeded: bool = False
    critical: FrozenSet[str] = frozenset()
    elapsed: float = 0.0

    @property
    def failed(self) -> List[str]:
        return [n for n, s in self.states.items() if s in (JobState.FAILED, JobState.TIMED_OUT)]

    @property
    def critical_failed(self) -> List[str]:
        return [n for n in self.states if n in self.critical and self.states[n] is not JobState.DONE]

    @property
    def exit_code(self) -> int:
        return 1 if self.critical_failed else 0


class JobHandle:
    """A launched job: its thread, launch time and outcome."""

    def __init__(self, job: Job, target: Callable[[], JobState], started_at: float):
        self.job = job
        self.started_at = started_at
        self.state: Optional[JobState] = None
        self.error: Optional[BaseException] = None
        self._target = target
        # daemon: an abandoned job must not keep the orchestrator alive
        self._thread = threading.Thread(target=self._run, name=f"devboot-job-{job.name}", daemon=True)

    def _run(self) -> None:
        try:
            self.state = self._target()
        except BaseException as e:
            self.error = e

    def start(self) -> None:
        self._thread.start()

    def done(self) -> bool:
        return not self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    @property
    def outcome(self) -> JobState:
        """State to record for a finished job that left no marker."""
        if self.state is not None and self.state.terminal:
            return self.state
        return JobState.FAILED


class Scheduler:
    def __init__(
        self,
        jobs: Iterable[Job],
        store: StatusStore,
        *,
        deadline: float = DEFAULT_DEADLINE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        locks: Optional[LockFactory] = None,
        console: Optional[Console] = None,
        execute: Optional[Callable[[Job], JobState]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.jobs = list(jobs)
        self.order = topo_order(self.jobs)
        self.by_name = {j.name: j for j in self.jobs}
        self.store = store
        self.deadline = deadline
        self.poll_interval = poll_interval
        self.locks = locks if locks is not None else MemoryLockFactory()
        self.console = console if console is not None else get_console()
        self._execute = execute if execute is not None else self._execute_job
        self._clock = clock
        self._sleep = sleep
        self._handles: Dict[str, JobHandle] = {}
        self._handles_lock = threading.Lock()
        self._reasons: Dict[str, str] = {}

    def _execute_job(self, job: Job) -> JobState:
        return execute_job(job, make_context(job, self.store, self.locks, self.console))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def launched(self) -> FrozenSet[str]:
        """Names of jobs started so far (read-only copy, for the reporter)."""
        with self._handles_lock:
            return frozenset(self._handles)

    def handle(self, name: str) -> Optional[JobHandle]:
        with self._handles_lock:
            return self._handles.get(name)

    # ------------------------------------------------------------------
    # One polling step
    # ------------------------------------------------------------------

    def _launch(self, job: Job) -> None:
        handle = JobHandle(job, lambda: self._execute(job), self._clock())
        with self._handles_lock:
            if job.name in self._handles:
                return
            self._handles[job.name] = handle
        self.console.print_debug(f"launching {job.name}")
        handle.start()

    def _record(self, name: str, state: JobState, reason: str, states: Dict[str, JobState]) -> None:
        if self.store.record_terminal(name, state):
            self._reasons[name] = reason
            states[name] = state
        else:
            try:
                states[name] = self.store.read_state(name)
            except StoreError:
                states[name] = JobState.FAILED

    def _collect_finished(self, states: Dict[str, JobState]) -> None:
        with self._handles_lock:
            handles = list(self._handles.items())
        for name, handle in handles:
            if not handle.done() or states[name].terminal:
                continue
            reason = "finished without a status marker"
            if handle.error is not None:
                reason = f"crashed: {handle.error}"
            self._record(name, handle.outcome, reason, states)

    def _enforce_job_deadlines(self, states: Dict[str, JobState]) -> None:
        now = self._clock()
        with self._handles_lock:
            handles = list(self._handles.items())
        for name, handle in handles:
            limit = handle.job.deadline
            if limit is None or states[name].terminal or handle.done():
                continue
            if now - handle.started_at > limit:
                self.console.print_warning(f"Job {name} exceeded its {limit:g}s deadline; abandoning it")
                self._record(name, JobState.TIMED_OUT, f"exceeded job deadline of {limit:g}s", states)

    def tick(self) -> Dict[str, JobState]:
        """Run one scheduling pass and return the store's view of every job."""
        states, unreadable = read_all(self.store, self.order)
        for name, err in unreadable.items():
            if name not in self._reasons:
                self.console.print_warning(f"{err}; treating job {name} as failed")
                self._reasons[name] = f"unreadable status marker: {err}"
        self._collect_finished(states)
        self._enforce_job_deadlines(states)

        launched = self.launched()
        # dependencies first, so a failure propagates down the whole chain in one pass
        for name in self.order:
            if states[name] is not JobState.PENDING or name in launched:
                continue
            job = self.by_name[name]
            broken = next(
                (d for d in job.needs if states[d] in (JobState.FAILED, JobState.TIMED_OUT)),
                None,
            )
            if broken is not None:
                err = DependencyFailed(job=name, dependency=broken)
                self.console.print_warning(str(err))
                self._record(name, JobState.FAILED, f"dependency '{broken}' did not complete", states)
                continue
            if all(states[d] is JobState.DONE for d in job.needs):
                self._launch(job)

        return states

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        start = self._clock()
        completed = False
        deadline_exceeded = False

        while True:
            states = self.tick()
            if all(s.terminal for s in states.values()):
                completed = True
                break
            if self._clock() - start >= self.deadline:
                deadline_exceeded = True
                break
            self._sleep(self.poll_interval)

        launched = self.launched()
        final: Dict[str, JobState] = {}
        reasons = dict(self._reasons)
        for job in self.jobs:
            state = states[job.name]
            if not state.terminal:
                if job.name in launched:
                    state = JobState.RUNNING
                    reasons.setdefault(job.name, "still running at deadline")
                else:
                    reasons.setdefault(job.name, "never started")
            final[job.name] = state

        if deadline_exceeded:
            self.console.print_warning(
                f"Global deadline of {self.deadline:g}s reached; leaving unfinished jobs behind"
            )

        return RunResult(
            states=final,
            reasons=reasons,
            completed=completed,
            deadline_exceeded=deadline_exceeded,
            critical=frozenset(j.name for j in self.jobs if j.critical),
            elapsed=self._clock() - start,
        )


def orchestrate(
    jobs: Iterable[Job],
    store: StatusStore,
    *,
    deadline: float = DEFAULT_DEADLINE,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    report_interval: float = 3.0,
    locks: Optional[LockFactory] = None,
    console: Optional[Console] = None,
    resume: bool = False,
    report: bool = True,
) -> RunResult:
    """
    One orchestration run: clear the store, schedule every job, report progress.

    With `resume=True` the store is kept, so jobs that already hold a
    terminal marker from an interrupted run are not started again.
    """
    jobs = list(jobs)
    console = console if console is not None else get_console()
    scheduler = Scheduler(
        jobs,
        store,
        deadline=deadline,
        poll_interval=poll_interval,
        locks=locks,
        console=console,
    )
    if not resume:
        store.clear()

    if not report:
        return scheduler.run()

    reporter = Reporter(
        store,
        [j.name for j in jobs],
        running=scheduler.launched,
        console=console,
        interval=report_interval,
    )
    stop = threading.Event()
    reporter_thread = threading.Thread(target=reporter.run, args=(stop,), name="devboot-reporter", daemon=True)
    reporter_thread.start()
    try:
        return scheduler.run()
    finally:
        stop.set()
        reporter_thread.join(timeout=report_interval + 1.0)
