# store.py
# Status store: the persisted record of each job's terminal state.
#
# Contract shared by every backend:
#   - record_terminal(job, state) is write-once per run: the first terminal
#     state recorded for a job wins, later calls are no-ops
#   - a marker is never observable half-written
#   - read_state(job) is PENDING while no marker exists
#   - clear() starts a new run by removing every marker
#
# Only terminal states are stored; "running" is not a marker.

from __future__ import annotations

import os
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Tuple

import redis
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Base, StatusMarker
from .errors import StoreError
from .model import JOB_NAME_RE, JobState


def _check_terminal(state: JobState) -> JobState:
    state = JobState(state)
    if not state.terminal:
        raise ValueError(f"only terminal states can be recorded, got {state.value!r}")
    return state


def _parse(job: str, token: str | None) -> JobState:
    if token is None or not token.strip():
        return JobState.PENDING
    try:
        state = JobState.from_token(token)
    except ValueError:
        raise StoreError(f"marker for job '{job}' holds unknown token {token.strip()!r}") from None
    if not state.terminal:
        raise StoreError(f"marker for job '{job}' holds non-terminal token {token.strip()!r}")
    return state


class StatusStore(ABC):
    """Key/value record of job terminal states, keyed by job name."""

    url: str = ""

    @abstractmethod
    def record_terminal(self, job: str, state: JobState) -> bool:
        """Write the job's terminal marker. Returns False if one already existed."""

    @abstractmethod
    def read_state(self, job: str) -> JobState:
        """PENDING when no marker exists, else the recorded state."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every marker (start of a new run)."""

    def snapshot(self, jobs: Iterable[str]) -> Dict[str, JobState]:
        return {name: self.read_state(name) for name in jobs}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.url!r})"


class MemoryStatusStore(StatusStore):
    """In-process store for tests and single-process runs."""

    url = "memory://"

    def __init__(self) -> None:
        self._markers: Dict[str, JobState] = {}
        self._lock = threading.Lock()

    def record_terminal(self, job: str, state: JobState) -> bool:
        state = _check_terminal(state)
        with self._lock:
            if job in self._markers:
                return False
            self._markers[job] = state
            return True

    def read_state(self, job: str) -> JobState:
        with self._lock:
            return self._markers.get(job, JobState.PENDING)

    def clear(self) -> None:
        with self._lock:
            self._markers.clear()


class FileStatusStore(StatusStore):
    """
    One marker file per job: `<root>/<job>.status` holding the state token.

    A marker is written to a private temp file, then hard-linked to its final
    name. link() is atomic and fails if the name exists, which gives both
    "never half-written" and "first write wins" without any locking.
    """

    SUFFIX = ".status"

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.url = str(self.root)

    def path_for(self, job: str) -> Path:
        if not JOB_NAME_RE.match(job):
            raise ValueError(f"Invalid job name {job!r}")
        return self.root / f"{job}{self.SUFFIX}"

    def record_terminal(self, job: str, state: JobState) -> bool:
        state = _check_terminal(state)
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.path_for(job)
        if target.exists():
            return False

        tmp = self.root / f".{job}.{uuid.uuid4().hex}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(state.value + "\n")
            f.flush()
            os.fsync(f.fileno())
        try:
            os.link(tmp, target)
            return True
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)

    def read_state(self, job: str) -> JobState:
        try:
            token = self.path_for(job).read_text(encoding="utf-8")
        except FileNotFoundError:
            return JobState.PENDING
        return _parse(job, token)

    def clear(self) -> None:
        if not self.root.exists():
            return
        for p in self.root.iterdir():
            if p.suffix == self.SUFFIX or p.name.endswith(".tmp"):
                p.unlink(missing_ok=True)


class RedisStatusStore(StatusStore):
    """One key per job under `namespace`, written with SET NX."""

    def __init__(self, client, namespace: str = "devboot:status:", url: str = "redis://"):
        self.client = client
        self.namespace = namespace
        self.url = url

    def key_for(self, job: str) -> str:
        return f"{self.namespace}{job}"

    def record_terminal(self, job: str, state: JobState) -> bool:
        state = _check_terminal(state)
        return bool(self.client.set(self.key_for(job), state.value, nx=True))

    def read_state(self, job: str) -> JobState:
        return _parse(job, self.client.get(self.key_for(job)))

    def snapshot(self, jobs: Iterable[str]) -> Dict[str, JobState]:
        names = list(jobs)
        if not names:
            return {}
        values = self.client.mget([self.key_for(n) for n in names])
        return {n: _parse(n, v) for n, v in zip(names, values)}

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.namespace}*"))
        if keys:
            self.client.delete(*keys)


class SqlStatusStore(StatusStore):
    """
    One row per job in a `status_markers` table (SQLAlchemy).

    The job name is the primary key; a second insert for the same job hits
    the constraint and is treated as "already recorded".
    """

    def __init__(self, url: str, engine=None):
        self.url = url
        self.engine = engine if engine is not None else sa.create_engine(url, pool_pre_ping=True)
        Base.metadata.create_all(self.engine)

    def record_terminal(self, job: str, state: JobState) -> bool:
        state = _check_terminal(state)
        try:
            with Session(self.engine) as s, s.begin():
                s.add(StatusMarker(job_name=job, state=state.value, recorded_at=datetime.now(timezone.utc)))
        except IntegrityError:
            return False
        return True

    def read_state(self, job: str) -> JobState:
        with Session(self.engine) as s:
            row = s.get(StatusMarker, job)
            return _parse(job, row.state if row else None)

    def snapshot(self, jobs: Iterable[str]) -> Dict[str, JobState]:
        names = list(jobs)
        with Session(self.engine) as s:
            rows = s.execute(
                sa.select(StatusMarker.job_name, StatusMarker.state).where(StatusMarker.job_name.in_(names))
            ).all()
        found = {name: state for name, state in rows}
        return {n: _parse(n, found.get(n)) for n in names}

    def clear(self) -> None:
        with Session(self.engine) as s, s.begin():
            s.execute(sa.delete(StatusMarker))


def read_all(store: StatusStore, jobs: Iterable[str]) -> Tuple[Dict[str, JobState], Dict[str, StoreError]]:
    """
    Snapshot that never raises on a bad marker.

    A marker a job scribbled itself may hold anything; such a job reads as
    FAILED and its error is returned next to the states, so one job cannot
    take down the polling loops.
    """
    names = list(jobs)
    try:
        return store.snapshot(names), {}
    except StoreError:
        pass
    states: Dict[str, JobState] = {}
    errors: Dict[str, StoreError] = {}
    for name in names:
        try:
            states[name] = store.read_state(name)
        except StoreError as e:
            states[name] = JobState.FAILED
            errors[name] = e
    return states, errors


SQL_SCHEMES =("sqlite", "postgresql", "postgres", "mysql", "mariadb")


def open_store(url: str) -> StatusStore:
    """
    Build a status store from a URL or path.

      memory://                  MemoryStatusStore
      redis://host:6379/0        RedisStatusStore
      sqlite:///status.db, ...   SqlStatusStore
      file:///tmp/x or a path    FileStatusStore
    """
    if url.startswith("memory://"):
        return MemoryStatusStore()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisStatusStore(redis.Redis.from_url(url, decode_responses=True), url=url)
    scheme = url.split(":", 1)[0].split("+", 1)[0] if "://" in url else ""
    if scheme in SQL_SCHEMES:
        return SqlStatusStore(url)
    if url.startswith("file://"):
        return FileStatusStore(url[len("file://"):])
    if scheme:
        raise ValueError(f"Unsupported status store URL: {url}")
    return FileStatusStore(url)
