"""
Watchdog-based file system monitoring for the queue directory.

Wakes the scheduler when task records are created or changed, or when the
stop marker appears, instead of waiting for the next poll tick.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

from agent_queue.lease import STOP_FILE
from agent_queue.storage import TASK_FILE_PATTERN


logger = logging.getLogger(__name__)


class DebounceTracker:
    """
    Coalesces bursts of events for the same file.

    An atomic replace produces several events (temp create, move); only the
    first inside the window triggers a wake.
    """

    def __init__(self, debounce_ms: int = 200):
        self.debounce_seconds = debounce_ms / 1000.0
        self._last_seen: Dict[str, float] = {}

    def should_process(self, file_path: str) -> bool:
        now = time.monotonic()
        last = self._last_seen.get(file_path, float("-inf"))
        if now - last < self.debounce_seconds:
            return False
        self._last_seen[file_path] = now
        return True

    def cleanup_old_events(self, max_age_seconds: float = 60.0) -> None:
        cutoff = time.monotonic() - max_age_seconds
        self._last_seen = {path: ts for path, ts in self._last_seen.items() if ts > cutoff}


class QueueDirectoryWatcher(FileSystemEventHandler):
    """
    Watches one queue directory and calls wake_callback on relevant changes.

    The callback runs on the observer thread; callers that drive an asyncio
    loop should pass something that hops threads (loop.call_soon_threadsafe).
    """

    def __init__(
        self,
        queue_dir: Path,
        wake_callback: Callable[[str], None],
        debounce_ms: int = 200,
        patterns: Iterable[str] = (TASK_FILE_PATTERN, STOP_FILE),
    ):
        super().__init__()
        self.queue_dir = Path(queue_dir)
        self.wake_callback = wake_callback
        self.patterns = tuple(patterns)
        self.debounce = DebounceTracker(debounce_ms)
        self._observer: Optional[Observer] = None

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_file_event(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_file_event(event.src_path, "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writes land as a rename onto the final name
        if not event.is_directory:
            self._handle_file_event(event.dest_path, "moved")

    def matches(self, file_path: str) -> bool:
        name = Path(file_path).name
        return any(Path(name).match(pattern) for pattern in self.patterns)

    def _handle_file_event(self, file_path: str, event_type: str) -> None:
        if not self.matches(file_path):
            return
        if not self.debounce.should_process(file_path):
            logger.debug(f"Debounced {event_type} event for: {Path(file_path).name}")
            return

        logger.debug(f"Queue file {event_type}: {Path(file_path).name}")
        try:
            self.wake_callback(file_path)
        except Exception as e:
            logger.error(f"Error in wake callback for {Path(file_path).name}: {e}", exc_info=True)

        self.debounce.cleanup_old_events()

    def start(self) -> None:
        """Start a watchdog observer on the queue directory (non-recursive)."""
        if self._observer is not None:
            logger.warning(f"Observer already running for {self.queue_dir}")
            return

        if not self.queue_dir.exists():
            logger.error(f"Queue directory does not exist: {self.queue_dir}")
            return

        self._observer = Observer()
        self._observer.schedule(event_handler=self, path=str(self.queue_dir), recursive=False)
        self._observer.start()
        logger.info(f"Watching queue directory: {self.queue_dir}")

    def stop(self) -> None:
        if self._observer is None:
            return
        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping observer for {self.queue_dir}: {e}", exc_info=True)
        finally:
            self._observer = None
        logger.debug(f"Stopped watching {self.queue_dir}")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
