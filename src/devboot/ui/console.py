"""Console output formatting utilities for devboot."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from devboot.scheduler import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to sys.stdout at call time)
        """
        self.debug = debug
        self._stream = stream
        # job threads print concurrently
        self._lock = threading.Lock()

    @property
    def stream(self):
        return self._stream if self._stream is not None else sys.stdout

    def _out(self, text: str = "") -> None:
        with self._lock:
            print(text, file=self.stream, flush=True)

    def _err(self, text: str = "") -> None:
        with self._lock:
            print(text, file=sys.stderr, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n" + "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        job_count: int,
        store: str,
        deadline: float,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED\n"
            f"Workflow: {workflow}\n"
            f"Jobs: {job_count}\n"
            f"Status store: {store}\n"
            f"Deadline: {deadline:g}s\n"
        )

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] ▶ {step}")

    def print_job_output(self, job: str, line: str) -> None:
        """Forward one line of a job's command output."""
        self._out(f"[{job}] {line.rstrip()}")

    def print_job_finished(self, name: str, state: str) -> None:
        self._out(f"JOB FINISHED: {name} ({state})")

    def print_retry(self, job: str, step: str, attempt: int, attempts: int, delay: float, reason: str) -> None:
        """Print a retry notice for a failed attempt."""
        self._out(
            f"[{job}] {step}: attempt {attempt}/{attempts} failed ({reason}); retrying in {delay:g}s"
        )

    def print_status_update(self, tick: int, line: str) -> None:
        self._out(f"STATUS UPDATE ({tick}): {line}")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, state in result.states.items():
            display = state.name.replace("_", " ")
            marker = " (critical)" if job in result.critical else ""
            reason = result.reasons.get(job)
            lines.append(f"  {job}{marker}: {display}" + (f" - {reason}" if reason else ""))
        if result.deadline_exceeded:
            lines.append("")
            lines.append("Deadline reached before every job finished; partial result.")
        self._out("\n".join(lines))

    def print_warning(self, message: str) -> None:
        self._err(f"⚠️  {message}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._err("\n".join(lines))

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._err(f"[DEBUG] {message}")


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
