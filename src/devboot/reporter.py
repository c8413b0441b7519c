# reporter.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from .model import JobState
from .store import StatusStore, read_all
from .ui.console import Console, get_console

SYMBOLS: Dict[JobState, str] = {
    JobState.PENDING: "⚪",
    JobState.RUNNING: "🟡",
    JobState.DONE: "✅",
    JobState.FAILED: "🔴",
    JobState.TIMED_OUT: "⏰",
}


@dataclass(frozen=True)
class Snapshot:
    states: Dict[str, JobState]

    @property
    def complete(self) -> bool:
        return all(s.terminal for s in self.states.values())


def render(snapshot: Snapshot) -> str:
    """One symbol + name per job, in the order the jobs were declared."""
    return " ".join(f"{SYMBOLS[state]} {name}" for name, state in snapshot.states.items())


class Reporter:
    """
    Periodic, read-only progress view over the status store.

    Terminal states come from the store. A job without a marker shows as
    running once `running()` (the scheduler's launched set) includes it.
    """

    def __init__(
        self,
        store: StatusStore,
        jobs: Iterable[str],
        *,
        running: Optional[Callable[[], FrozenSet[str]]] = None,
        console: Optional[Console] = None,
        interval: float = 3.0,
    ):
        self.store = store
        self.jobs = list(jobs)
        self.running = running if running is not None else frozenset
        self.console = console if console is not None else get_console()
        self.interval = interval
        self.ticks = 0
        self._announced = False

    def snapshot(self) -> Snapshot:
        stored, _ = read_all(self.store, self.jobs)
        started = self.running()
        states = {}
        for name in self.jobs:
            state = stored[name]
            if not state.terminal and name in started:
                state = JobState.RUNNING
            states[name] = state
        return Snapshot(states)

    def tick(self) -> Snapshot:
        self.ticks += 1
        snap = self.snapshot()
        self.console.print_status_update(self.ticks, render(snap))
        if snap.complete and not self._announced:
            self._announced = True
            self.console.print_info("✅ All jobs completed!")
        return snap

    def run(self, stop: threading.Event) -> None:
        """Tick every `interval` seconds until everything is terminal or `stop` is set."""
        while not stop.is_set():
            if self.tick().complete:
                return
            stop.wait(self.interval)
