# src/devboot/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Union

from .model import Job, JobContext, RetryPolicy, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: Union[str, List[str]],
    *,
    cwd: str | None = None,
    idle_timeout: float | None = None,
    timeout: float | None = None,
    retry: RetryPolicy | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, idle_timeout=idle_timeout, timeout=timeout, retry=retry)


def call(
    name: str,
    fn: Callable[[JobContext], Any],
    *,
    timeout: float | None = None,
    retry: RetryPolicy | None = None,
) -> Step:
    """Create a step that runs a Python callable with the job's context."""
    return Step(name=name, fn=fn, timeout=timeout, retry=retry)


def retry(attempts: int = 3, *, backoff: float = 1.0, lock: str | None = None, lock_wait: float = 10.0) -> RetryPolicy:
    """retry(3, backoff=2, lock="apt") -> RetryPolicy"""
    return RetryPolicy(attempts=attempts, backoff=backoff, lock=lock, lock_wait=lock_wait)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    deadline: float | None = None,
    critical: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    idle_timeout: float | None = None,  # default idle timeout for shell steps missing one
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None or s.fn is not None else replace(s, cwd=cwd) for s in steps_final]
    if idle_timeout is not None:
        steps_final = [
            s if s.idle_timeout is not None or s.fn is not None else replace(s, idle_timeout=idle_timeout)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        deadline=deadline,
        critical=critical,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._deadline: float | None = None
        self._critical = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(
        self,
        name: str,
        run: Union[str, List[str]],
        cwd: str | None = None,
        *,
        idle_timeout: float | None = None,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._steps.append(sh(name, run, cwd=cwd, idle_timeout=idle_timeout, timeout=timeout, retry=retry))
        return self

    def define_call(self, name: str, fn: Callable[[JobContext], Any], *, timeout: float | None = None,
                    retry: RetryPolicy | None = None):
        self._steps.append(call(name, fn, timeout=timeout, retry=retry))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_deadline(self, seconds: float):
        self._deadline = seconds
        return self

    def critical(self, value: bool = True):
        self._critical = value
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            env=dict(self._env),
            deadline=self._deadline,
            critical=self._critical,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('repo').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper.

        from devboot import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)
