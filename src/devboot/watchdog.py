# watchdog.py
# Run one external command and abort it when it goes quiet.
#
# The child's stdout and stderr are merged and forwarded line by line as they
# arrive. Every `check_interval` seconds the monitor compares "now" with the
# time of the last line; past `idle_timeout` the child's process group gets
# SIGTERM, then SIGKILL after `grace` seconds, and the call returns 124.

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from typing import Callable, Mapping, Optional, Sequence, Union

from .ui.console import get_console

TIMEOUT_EXIT_CODE = 124
DEFAULT_IDLE_TIMEOUT = 20.0
CHECK_INTERVAL = 1.0
KILL_GRACE = 1.0
DRAIN_TIMEOUT = 5.0

Command = Union[str, Sequence[str]]


class WatchdogSession:
    """One child process plus the time its last output line was seen."""

    def __init__(self, proc: subprocess.Popen, idle_timeout: float | None, clock: Callable[[], float]):
        self.proc = proc
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._last_output = clock()

    def touch(self) -> None:
        with self._lock:
            self._last_output = self._clock()

    def idle_for(self) -> float:
        with self._lock:
            return self._clock() - self._last_output

    def stalled(self) -> bool:
        return self.idle_timeout is not None and self.idle_for() > self.idle_timeout


def _pump(session: WatchdogSession, on_line: Callable[[str], None]) -> None:
    stream = session.proc.stdout
    assert stream is not None
    for raw in iter(stream.readline, b""):
        session.touch()
        on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
    stream.close()


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        # group already gone, or the child left it; fall back to the child
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


def terminate(proc: subprocess.Popen, grace: float = KILL_GRACE) -> None:
    """SIGTERM the child's process group, SIGKILL it if still alive after `grace`."""
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)
        proc.wait()


def run_watched(
    command: Command,
    idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
    *,
    timeout: float | None = None,
    on_line: Optional[Callable[[str], None]] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: str | None = None,
    check_interval: float = CHECK_INTERVAL,
    grace: float = KILL_GRACE,
    clock: Callable[[], float] = time.monotonic,
    on_timeout: Optional[Callable[[str, float], None]] = None,
) -> int:
    """
    Run `command` and return its exit code, or 124 if it was stopped.

    Args:
        command: A shell string or an argv list
        idle_timeout: Seconds without output before the command is killed
            (None disables the idle check)
        timeout: Optional cap on total runtime, also reported as 124
        on_line: Receives every output line (defaults to the console)
        env: Full environment for the child
        cwd: Working directory for the child
        check_interval: How often the monitor looks at the idle clock
        grace: Seconds between SIGTERM and SIGKILL
        on_timeout: Told which limit fired, ("idle", idle_timeout) or
            ("total", timeout), before the command is killed
    """
    console = get_console()
    if on_line is None:
        on_line = console.print_info

    shell = isinstance(command, str)
    proc = subprocess.Popen(
        command,
        shell=shell,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        start_new_session=True,
    )
    session = WatchdogSession(proc, idle_timeout, clock)
    started = clock()

    reader = threading.Thread(target=_pump, args=(session, on_line), daemon=True)
    reader.start()

    shown = command if shell else " ".join(command)
    try:
        while True:
            try:
                proc.wait(timeout=check_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if session.stalled():
                console.print_warning(
                    f"No output for {idle_timeout:g}s. Terminating stalled command: {shown}"
                )
                if on_timeout is not None:
                    on_timeout("idle", idle_timeout)
                terminate(proc, grace)
                reader.join(timeout=grace)
                return TIMEOUT_EXIT_CODE
            if timeout is not None and clock() - started > timeout:
                console.print_warning(f"Command exceeded {timeout:g}s. Terminating: {shown}")
                if on_timeout is not None:
                    on_timeout("total", timeout)
                terminate(proc, grace)
                reader.join(timeout=grace)
                return TIMEOUT_EXIT_CODE
    except BaseException:
        terminate(proc, grace)
        raise

    # a grandchild that escaped the group may still hold the pipe open
    reader.join(timeout=DRAIN_TIMEOUT)
    return proc.returncode
