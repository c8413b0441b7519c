# locks.py
# Named, bounded-wait locks guarding external resources that do not tolerate
# concurrent mutation (e.g. a package database).
#
# A lock factory maps a lock name to a lock object; every acquire() call
# waits at most `timeout` seconds and reports whether it got the lock.

from __future__ import annotations

import fcntl
import os
import re
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Protocol

import redis

from .ui.console import get_console


class NamedLock(Protocol):
    name: str

    def acquire(self, timeout: float) -> bool: ...

    def release(self) -> None: ...


LockFactory = Callable[[str], NamedLock]

_SAFE = re.compile(r"[^A-Za-z0-9_.-]")

POLL_SECONDS = 0.05


def _lock_filename(name: str) -> str:
    return _SAFE.sub("_", name) + ".lock"


class FileLock:
    """
    fcntl-based lock on `<directory>/<name>.lock`.

    Each acquire opens its own file description, so the lock excludes both
    other processes and other threads of this process.
    """

    def __init__(self, directory: str | Path, name: str):
        self.name = name
        self.path = Path(directory) / _lock_filename(name)
        self._fd: int | None = None

    def acquire(self, timeout: float) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return True
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    return False
                time.sleep(POLL_SECONDS)

    def release(self) -> None:
        # may run on another thread than acquire(); detach the fd before unlocking
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class FileLockFactory:
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def __call__(self, name: str) -> FileLock:
        return FileLock(self.directory, name)


class RedisLock:
    """
    `SET key token NX EX ttl` lock; released only by the holder's token.

    The TTL bounds how long a crashed holder can keep the resource. While
    the lock is held a keep-alive thread extends it every ttl/3 seconds, so
    a long attempt does not lose the lock to expiry.
    """

    _RELEASE = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) else return 0 end"
    )
    _RENEW = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('expire', KEYS[1], ARGV[2]) else return 0 end"
    )

    def __init__(self, client, name: str, prefix: str = "devboot:lock:", ttl: int = 600):
        self.client = client
        self.name = name
        self.key = f"{prefix}{name}"
        self.ttl = ttl
        self._token: str | None = None
        self._stop: threading.Event | None = None

    def acquire(self, timeout: float) -> bool:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + timeout
        while True:
            if self.client.set(self.key, token, nx=True, ex=self.ttl):
                stop = threading.Event()
                self._token, self._stop = token, stop
                threading.Thread(
                    target=self._keep_alive,
                    args=(token, stop),
                    name=f"devboot-lock-{self.name}",
                    daemon=True,
                ).start()
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_SECONDS)

    def _keep_alive(self, token: str, stop: threading.Event) -> None:
        while not stop.wait(self.ttl / 3):
            try:
                if not self.client.eval(self._RENEW, 1, self.key, token, self.ttl):
                    get_console().print_warning(f"Lock '{self.name}' expired while held")
                    return
            except redis.RedisError as e:
                get_console().print_warning(f"Could not renew lock '{self.name}': {e}")
                return

    def release(self) -> None:
        # may run on another thread than acquire()
        token, stop = self._token, self._stop
        self._token, self._stop = None, None
        if token is None:
            return
        stop.set()
        self.client.eval(self._RELEASE, 1, self.key, token)


class RedisLockFactory:
    def __init__(self, client, prefix: str = "devboot:lock:", ttl: int = 600):
        self.client = client
        self.prefix = prefix
        self.ttl = ttl

    def __call__(self, name: str) -> RedisLock:
        return RedisLock(self.client, name, prefix=self.prefix, ttl=self.ttl)


class MemoryLock:
    def __init__(self, name: str, lock: threading.Lock):
        self.name = name
        self._lock = lock
        self._held = False

    def acquire(self, timeout: float) -> bool:
        # a failed acquire must not clear the flag of a holder on another thread
        if not self._lock.acquire(timeout=max(timeout, 0)):
            return False
        self._held = True
        return True

    def release(self) -> None:
        if self._held:
            self._held = False
            self._lock.release()


class MemoryLockFactory:
    """In-process locks, one per name. Used by tests."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __call__(self, name: str) -> MemoryLock:
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
        return MemoryLock(name, lock)


def open_locks(url: str) -> LockFactory:
    """
    Build a lock factory from a URL or path.

      memory://            in-process locks
      redis://host/0       Redis locks
      anything else        directory of fcntl lock files
    """
    if url.startswith("memory://"):
        return MemoryLockFactory()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisLockFactory(redis.Redis.from_url(url, decode_responses=True))
    if url.startswith("file://"):
        url = url[len("file://"):]
    return FileLockFactory(url)
