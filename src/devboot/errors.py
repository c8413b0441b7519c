# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class BootstrapError(Exception):
    """Base class for every error raised by devboot."""


class WorkflowError(BootstrapError, ValueError):
    """The job graph or workflow file is invalid."""


class StoreError(BootstrapError):
    """The status store holds something it cannot interpret."""


@dataclass
class StepFailure(BootstrapError):
    """A step exited non-zero (or a callable step reported failure)."""
    job: str
    step: str
    cmd: str
    exit_code: int | None = None
    message: str | None = None

    def __str__(self) -> str:
        if self.message:
            return f"[{self.job}] step '{self.step}' failed: {self.message}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(BootstrapError):
    """A step stopped producing output, or ran past its per-attempt timeout."""
    job: str
    step: str
    seconds: float | None = None
    cause: str | None = None  # "idle" or "total"

    def __str__(self) -> str:
        if self.seconds is None:
            return f"[{self.job}] step '{self.step}' timed out"
        if self.cause == "idle":
            return f"[{self.job}] step '{self.step}' timed out: no output for {self.seconds:g}s"
        return f"[{self.job}] step '{self.step}' timed out after {self.seconds:g}s"


@dataclass
class LockContention(BootstrapError):
    lock: str
    waited: float

    def __str__(self) -> str:
        return f"could not acquire lock '{self.lock}' within {self.waited:g}s"


@dataclass
class RetryExhausted(BootstrapError):
    """
    Every attempt failed.

    `last_error` is the exception raised by the final attempt; `timed_out`
    is True when that final attempt failed by timing out.
    """
    attempts: int
    last_error: BaseException | None = None
    errors: list[BaseException] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return isinstance(self.last_error, StepTimeout)

    def __str__(self) -> str:
        return f"gave up after {self.attempts} attempt(s): {self.last_error}"


@dataclass
class DependencyFailed(BootstrapError):
    job: str
    dependency: str

    def __str__(self) -> str:
        return f"[{self.job}] skipped: dependency '{self.dependency}' did not complete"
