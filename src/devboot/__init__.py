from .model import Job, JobContext, JobState, RetryPolicy, Step
from .scheduler import RunResult, Scheduler, orchestrate
from .store import open_store
from .watchdog import run_watched
# Imported last: loading the devboot.retry submodule above would otherwise
# shadow the re-exported retry() helper on the package.
from .dsl import job, sh, call, retry, wf, JobBuilder, build

__all__ = [
    "job", "sh", "call", "retry", "wf", "JobBuilder", "build",
    "Job", "JobContext", "JobState", "RetryPolicy", "Step",
    "RunResult", "Scheduler", "orchestrate", "open_store", "run_watched",
]
