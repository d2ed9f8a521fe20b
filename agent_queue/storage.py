"""
Task Store: one JSON file per task in the queue directory.

Layout:
- <queue_dir>/task-<id>.json   - one Task record each (atomic replace)
- <queue_dir>/<id>.json        - older layout, still read and listed
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from agent_queue.atomic import AtomicFileWriter, remove_quietly
from agent_queue.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    Task,
    TaskStatus,
)


logger = logging.getLogger(__name__)

TASK_FILE_PREFIX = "task-"
TASK_FILE_PATTERN = "task-*.json"


class TaskStoreError(RuntimeError):
    """Raised when a task record cannot be read or written."""


class TaskNotFoundError(TaskStoreError):
    """Raised when a task id does not resolve to a stored record."""


class InvalidTaskIdError(ValueError):
    """Raised for ids that cannot be mapped safely to a filename."""


def validate_task_id(task_id: str) -> str:
    """
    Reject ids that could escape the queue directory.

    Args:
        task_id: Candidate id

    Returns:
        The id unchanged

    Raises:
        InvalidTaskIdError: If the id is empty or contains path syntax
    """
    if not task_id or not task_id.strip():
        raise InvalidTaskIdError("task ID is required")
    if "/" in task_id or "\\" in task_id:
        raise InvalidTaskIdError(f"invalid task ID '{task_id}': must not contain path separators")
    if ".." in task_id:
        raise InvalidTaskIdError(f"invalid task ID '{task_id}': must not contain '..'")
    if "\x00" in task_id:
        raise InvalidTaskIdError(f"invalid task ID '{task_id}': must not contain NUL")
    return task_id


class TaskStorage:
    """
    Durable file-per-record storage of Task entities.

    Records are named task-<id>.json so an input id can never alias another
    file in the queue directory (the lock, the stop marker, logs/).
    """

    def __init__(self, queue_dir: Path):
        self.queue_dir = Path(queue_dir)

    def ensure_dir(self) -> None:
        self.queue_dir.mkdir(parents=True, exist_ok=True)

    def task_path(self, task_id: str) -> Path:
        validate_task_id(task_id)
        return self.queue_dir / f"{TASK_FILE_PREFIX}{task_id}.json"

    def _legacy_path(self, task_id: str) -> Optional[Path]:
        # "task-x" in the old layout would alias the record of task "x"
        if task_id.startswith(TASK_FILE_PREFIX):
            return None
        return self.queue_dir / f"{task_id}.json"

    def exists(self, task_id: str) -> bool:
        if self.task_path(task_id).exists():
            return True
        legacy = self._legacy_path(task_id)
        return legacy is not None and legacy.exists()

    def save(self, task: Task) -> None:
        """Create or fully replace a task record."""
        path = self.task_path(task.id)
        self.ensure_dir()
        try:
            AtomicFileWriter.write_model(path, task)
        except OSError as e:
            raise TaskStoreError(f"failed to write {path}: {e}") from e

    def load(self, task_id: str) -> Task:
        """
        Load a task by id.

        Raises:
            TaskNotFoundError: If no record exists for the id
            TaskStoreError: If the record exists but cannot be parsed
        """
        path = self.task_path(task_id)
        if not path.exists():
            legacy = self._legacy_path(task_id)
            if legacy is None or not legacy.exists():
                raise TaskNotFoundError(f"task not found: {task_id}")
            path = legacy
        try:
            return AtomicFileWriter.read_model(path, Task)
        except FileNotFoundError as e:
            raise TaskNotFoundError(f"task not found: {task_id}") from e
        except (OSError, ValueError) as e:
            raise TaskStoreError(f"failed to read {path}: {e}") from e

    def list(self) -> List[Task]:
        """All readable tasks, priority descending then id ascending."""
        if not self.queue_dir.exists():
            return []

        by_id: Dict[str, Task] = {}
        for path in sorted(self.queue_dir.glob("*.json")):
            if not path.is_file():
                continue
            legacy = not path.name.startswith(TASK_FILE_PREFIX)
            try:
                task = AtomicFileWriter.read_model(path, Task)
            except (OSError, ValueError) as e:
                logger.debug(f"Skipping unreadable task record {path.name}: {e}")
                continue
            # Legacy <id>.json only counts when its name matches the id inside
            if legacy and path.stem != task.id:
                continue
            if legacy and task.id in by_id:
                continue
            by_id[task.id] = task

        tasks = list(by_id.values())
        tasks.sort(key=lambda t: (-t.priority, t.id))
        return tasks

    def delete(self, task_id: str) -> None:
        """Remove a task record; absence is not an error."""
        path = self.task_path(task_id)
        remove_quietly(path)
        legacy = self._legacy_path(task_id)
        if legacy is not None:
            remove_quietly(legacy)

    # Operator operations

    def enqueue(
        self,
        runner: str,
        worktree: str,
        name: str = "",
        task_id: Optional[str] = None,
        repository: Optional[str] = None,
        base_branch: Optional[str] = None,
        priority: int = 50,
        depends_on: Iterable[str] = (),
        prompt: str = "",
        files: Iterable[str] = (),
        verify: Iterable[str] = (),
        auto_commit: bool = False,
    ) -> Task:
        """
        Validate and persist a new PENDING task.

        Raises:
            ValueError: For an empty worktree/runner, an out-of-range
                priority, an invalid id or an id that already exists
        """
        task = build_task(
            runner=runner,
            worktree=worktree,
            name=name,
            task_id=task_id,
            repository=repository,
            base_branch=base_branch,
            priority=priority,
            depends_on=depends_on,
            prompt=prompt,
            files=files,
            verify=verify,
            auto_commit=auto_commit,
        )
        if self.exists(task.id):
            raise ValueError(f"task ID already exists: {task.id}")
        self.save(task)
        return task

    def reset(self, task_id: str, force: bool = False) -> Task:
        """
        Put a task back to PENDING, clearing its run history.

        Args:
            task_id: Task to reset
            force: Allow resetting a task recorded as RUNNING

        Raises:
            TaskNotFoundError: If the task does not exist
            ValueError: If the task is RUNNING and force is not set
        """
        task = self.load(task_id)
        if task.status == TaskStatus.RUNNING and not force:
            raise ValueError(f"task {task_id} is running; use --force to reset it anyway")
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.completed_at = None
        task.session_id = None
        task.last_error = None
        self.save(task)
        return task

    def find(self, pattern: str) -> Task:
        """
        Find a single task by exact id or unique substring.

        Matches id, name and worktree (case-insensitive for name/worktree).

        Raises:
            TaskNotFoundError: No task matches
            ValueError: More than one task matches
        """
        try:
            return self.load(pattern)
        except (TaskNotFoundError, InvalidTaskIdError):
            pass

        needle = pattern.lower()
        matches = [
            t for t in self.list()
            if pattern in t.id
            or needle in t.name.lower()
            or needle in t.worktree.lower()
        ]
        if not matches:
            raise TaskNotFoundError(f"no task found matching pattern: {pattern}")
        if len(matches) > 1:
            raise ValueError(f"multiple tasks match pattern '{pattern}': {len(matches)} matches")
        return matches[0]

    def status_counts(self, tasks: Optional[List[Task]] = None) -> Dict[str, int]:
        """Per-status task counts."""
        if tasks is None:
            tasks = self.list()
        return dict(sorted(Counter(t.status.value for t in tasks).items()))


def build_task(
    runner: str,
    worktree: str,
    name: str = "",
    task_id: Optional[str] = None,
    repository: Optional[str] = None,
    base_branch: Optional[str] = None,
    priority: int = 50,
    depends_on: Iterable[str] = (),
    prompt: str = "",
    files: Iterable[str] = (),
    verify: Iterable[str] = (),
    auto_commit: bool = False,
) -> Task:
    """Validate operator input and construct a PENDING task without persisting it."""
    if not runner or not runner.strip():
        raise ValueError("runner must be specified")
    if not worktree or not worktree.strip():
        raise ValueError("worktree must be specified")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

    fields = dict(
        runner=runner.strip().lower(),
        name=name,
        repository=repository,
        worktree=worktree.strip(),
        base_branch=base_branch,
        priority=priority,
        depends_on=list(depends_on),
        prompt=prompt,
        files=list(files),
        verify=[cmd for cmd in verify if cmd.strip()],
        auto_commit=auto_commit,
        status=TaskStatus.PENDING,
    )
    if task_id is not None:
        fields["id"] = validate_task_id(task_id.strip())
    task = Task(**fields)
    validate_task_id(task.id)
    if task.id in task.depends_on:
        raise ValueError(f"task {task.id} cannot depend on itself")
    return task
