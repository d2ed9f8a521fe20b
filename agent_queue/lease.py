"""
Worker coordination: the singleton lease and the stop signals.

The file-backed lease is advisory: presence of worker.lock means a worker is
active. It is never stale-checked; an operator removes it by hand after
confirming the old process is gone.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from agent_queue.atomic import AtomicFileWriter, create_exclusive, remove_quietly
from agent_queue.models import WorkerLock


logger = logging.getLogger(__name__)

LOCK_FILE = "worker.lock"
STOP_FILE = "worker.stop"


class WorkerAlreadyRunningError(RuntimeError):
    """Raised when the singleton lease is already held."""


def lock_path(queue_dir: Path) -> Path:
    return Path(queue_dir) / LOCK_FILE


def stop_path(queue_dir: Path) -> Path:
    return Path(queue_dir) / STOP_FILE


def load_worker_lock(queue_dir: Path) -> Optional[WorkerLock]:
    """Read the lock record, or None if no worker holds the lease."""
    path = lock_path(queue_dir)
    if not path.exists():
        return None
    try:
        return AtomicFileWriter.read_model(path, WorkerLock)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        # Present but unreadable still counts as held
        logger.debug(f"Unreadable worker lock {path}: {e}")
        return WorkerLock(pid=0, started_at="")


class WorkerLease(ABC):
    """At most one holder per queue directory."""

    @abstractmethod
    def acquire(self) -> WorkerLock:
        """
        Take the lease.

        Raises:
            WorkerAlreadyRunningError: If another holder exists
        """

    @abstractmethod
    def release(self) -> None:
        """Give up the lease; releasing an unheld lease is a no-op."""

    @abstractmethod
    def current(self) -> Optional[WorkerLock]:
        """The current holder, if any."""

    def is_held(self) -> bool:
        return self.current() is not None


class FileWorkerLease(WorkerLease):
    """Lease backed by an exclusively created worker.lock file."""

    def __init__(self, queue_dir: Path, pid: Optional[int] = None):
        self.queue_dir = Path(queue_dir)
        self.pid = pid if pid is not None else os.getpid()
        self._owned = False

    @property
    def path(self) -> Path:
        return lock_path(self.queue_dir)

    def acquire(self) -> WorkerLock:
        record = WorkerLock(pid=self.pid)
        if not create_exclusive(self.path, record.model_dump_json(indent=2) + "\n"):
            raise WorkerAlreadyRunningError(f"worker already running ({self.path} exists)")
        self._owned = True
        logger.debug(f"Acquired worker lease {self.path} (pid {self.pid})")
        return record

    def release(self) -> None:
        if not self._owned:
            return
        remove_quietly(self.path)
        self._owned = False
        logger.debug(f"Released worker lease {self.path}")

    def current(self) -> Optional[WorkerLock]:
        return load_worker_lock(self.queue_dir)


class InMemoryWorkerLease(WorkerLease):
    """Process-local lease for tests and embedded schedulers."""

    def __init__(self, pid: Optional[int] = None):
        self.pid = pid if pid is not None else os.getpid()
        self._holder: Optional[WorkerLock] = None

    def acquire(self) -> WorkerLock:
        if self._holder is not None:
            raise WorkerAlreadyRunningError("worker already running (lease held in memory)")
        self._holder = WorkerLock(pid=self.pid)
        return self._holder

    def release(self) -> None:
        self._holder = None

    def current(self) -> Optional[WorkerLock]:
        return self._holder


class CancellationToken:
    """
    In-process stop signal for the scheduler loop.

    Cancelling wakes any coroutine blocked in wait().
    """

    def __init__(self):
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None

    def bind(self, event: asyncio.Event) -> None:
        """Attach the loop's wake event so cancel() interrupts a sleep."""
        self._event = event
        if self._cancelled:
            event.set()

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class StopMarker:
    """Presence-only worker.stop file: the cross-process stop signal."""

    def __init__(self, queue_dir: Path):
        self.path = stop_path(queue_dir)

    def is_set(self) -> bool:
        return self.path.exists()

    def request(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch()

    def clear(self) -> bool:
        return remove_quietly(self.path)
