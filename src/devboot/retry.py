# retry.py
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, TypeVar

from .errors import LockContention, RetryExhausted, StepTimeout
from .locks import NamedLock

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 1.0
DEFAULT_LOCK_WAIT = 10.0


def backoff_delay(base: float, attempt: int) -> float:
    """Delay after failed attempt number `attempt` (1-based): base * 2^(attempt-1)."""
    return base * (2 ** (attempt - 1))


def call_with_timeout(
    fn: Callable[[], T],
    timeout: float | None,
    *,
    label: str = "operation",
    on_done: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run `fn` and give up waiting after `timeout` seconds.

    The call runs on a daemon thread; on timeout that thread is abandoned
    (Python cannot kill it) and StepTimeout is raised. `on_done` runs once
    `fn` has actually returned, in whichever thread ran it, so a lock handed
    to it stays held by an abandoned call until that call is over.
    """
    if timeout is None:
        try:
            return fn()
        finally:
            if on_done is not None:
                on_done()

    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as e:  # re-raised in the caller's thread
            outcome["error"] = e
        finally:
            if on_done is not None:
                on_done()

    worker = threading.Thread(target=target, name=f"devboot-attempt-{label}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise StepTimeout(job="", step=label, seconds=timeout, cause="total")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


def with_retry(
    operation: Callable[[], T],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    attempt_timeout: float | None = None,
    backoff: float = DEFAULT_BACKOFF,
    lock: Optional[NamedLock] = None,
    lock_wait: float = DEFAULT_LOCK_WAIT,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds or `attempts` runs out.

    Before every attempt the named `lock` (if any) is acquired, waiting at
    most `lock_wait` seconds; failing to get it counts as a failed attempt.
    A failed attempt (exception, or running past `attempt_timeout`) is
    followed by a sleep of backoff * 2^(attempt-1) unless it was the last.

    Returns the operation's value; raises RetryExhausted when every attempt
    failed.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    errors: list[BaseException] = []
    for attempt in range(1, attempts + 1):
        try:
            if lock is not None:
                if not lock.acquire(lock_wait):
                    raise LockContention(lock=lock.name, waited=lock_wait)
                # released by whoever finishes the operation, even after a timeout
                return call_with_timeout(operation, attempt_timeout, label=label, on_done=lock.release)
            return call_with_timeout(operation, attempt_timeout, label=label)
        except Exception as e:
            errors.append(e)
            if attempt == attempts:
                break
            delay = backoff_delay(backoff, attempt)
            if on_retry is not None:
                on_retry(attempt, delay, e)
            sleep(delay)

    raise RetryExhausted(attempts=attempts, last_error=errors[-1], errors=errors)


def wait_for(
    predicate: Callable[[], bool],
    *,
    attempts: int = 30,
    interval: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Poll `predicate` up to `attempts` times, `interval` seconds apart.

    Returns True as soon as it holds, False if it never did. Exceptions from
    the predicate count as "not yet".
    """
    for i in range(attempts):
        try:
            if predicate():
                return True
        except Exception:
            pass
        if i < attempts - 1:
            sleep(interval)
    return False
