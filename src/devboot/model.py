# model.py
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

if TYPE_CHECKING:
    from .locks import LockFactory
    from .store import StatusStore
    from .ui.console import Console


JOB_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class JobState(str, enum.Enum):
    """
    Lifecycle of one job within a run.

    The value is the token persisted as the job's status marker.
    """
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timeout"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def from_token(cls, token: str) -> "JobState":
        token = token.strip().lower()
        # shell jobs write "error" into their own marker
        if token == "error":
            return cls.FAILED
        return cls(token)


TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED, JobState.TIMED_OUT})


@dataclass(frozen=True)
class RetryPolicy:
    """How a step is retried: attempt budget, backoff base and resource lock."""
    attempts: int = 3
    backoff: float = 1.0
    lock: str | None = None
    lock_wait: float = 10.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")


@dataclass(frozen=True)
class Step:
    """
    A single command (or Python callable) inside a job.

    Exactly one of `run` and `fn` is set. A string `run` goes through the
    shell, a list is executed directly.
    """
    name: str
    run: Union[str, List[str], None] = None
    fn: Optional[Callable[["JobContext"], Any]] = None
    cwd: str | None = None
    idle_timeout: float | None = None
    timeout: float | None = None
    retry: RetryPolicy | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.fn is None):
            raise ValueError(f"step {self.name!r} needs exactly one of run= or fn=")

    @property
    def display(self) -> str:
        if self.fn is not None:
            return getattr(self.fn, "__name__", repr(self.fn))
        if isinstance(self.run, str):
            return self.run
        return " ".join(self.run or [])


@dataclass
class Job:
    """
    A setup job: ordered steps + dependencies.

    `deadline` bounds the whole job (seconds since launch); `critical`
    makes the run fail when this job does not reach Done.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    deadline: float | None = None
    critical: bool = False

    def __post_init__(self) -> None:
        if not JOB_NAME_RE.match(self.name):
            raise ValueError(
                f"Invalid job name {self.name!r}: use letters, digits, '.', '_' and '-'"
            )


@dataclass
class JobContext:
    """What a running job (and its callable steps) can see."""
    job: str
    env: Dict[str, str]
    store: "StatusStore"
    locks: "LockFactory"
    console: "Console"
