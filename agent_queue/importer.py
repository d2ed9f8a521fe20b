"""
Bulk import of task-batch files.

Schema (YAML, version "1.0"):

    version: "1.0"
    repository: /path/to/repo        # optional default for every task
    default_config:
      auto_commit: false
    tasks:
      - id: t1
        worktree: feature/x
        name: ...
        priority: 80                 # 0 or absent means 50
        depends_on: [t0]
        prompt: ...
        files_to_focus: [...]
        verification_commands: [...]
        config: {auto_commit: true}
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from agent_queue.models import DEFAULT_PRIORITY, Task
from agent_queue.storage import TaskStorage, build_task
from agent_queue.worktree import Git, GitError


logger = logging.getLogger(__name__)

SUPPORTED_VERSION = "1.0"

RepositoryResolver = Callable[[str], str]


class TaskFileError(ValueError):
    """Raised when a task file cannot be read, parsed or validated."""


class TaskFileConfig(BaseModel):
    auto_commit: bool = False


class TaskFileEntry(BaseModel):
    id: str
    worktree: str
    name: str = ""
    repository: str = ""
    base_branch: str = ""
    priority: int = 0
    depends_on: List[str] = Field(default_factory=list)
    prompt: str = ""
    files_to_focus: List[str] = Field(default_factory=list)
    verification_commands: List[str] = Field(default_factory=list)
    config: Optional[TaskFileConfig] = None

    @field_validator("id", "worktree", mode="before")
    @classmethod
    def scalar_to_string(cls, v):
        # YAML reads `id: 42` as an int
        return str(v) if isinstance(v, (int, float)) else v

    @field_validator("name", "repository", "base_branch", "prompt", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v


class TaskFile(BaseModel):
    version: str
    repository: str = ""
    default_config: Optional[TaskFileConfig] = None
    tasks: List[TaskFileEntry] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def version_as_string(cls, v):
        # `version: 1.0` in YAML is a float
        return str(v)


def resolve_repository_root(path: str) -> str:
    """Repository root containing path (or the current directory when blank)."""
    git = Git.from_dir(Path(path).expanduser()) if path.strip() else Git.from_cwd()
    return str(git.repo_root)


def parse_task_file(text: str, source: str = "<task file>") -> TaskFile:
    """
    Parse and structurally validate a task file.

    Raises:
        TaskFileError: For invalid YAML, a wrong shape or an unsupported version
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TaskFileError(f"failed to parse YAML: {source}: {e}") from e
    if not isinstance(data, dict):
        raise TaskFileError(f"task file must be a mapping: {source}")

    try:
        definition = TaskFile(**data)
    except ValidationError as e:
        raise TaskFileError(f"invalid task file {source}: {e}") from e

    if definition.version.strip() != SUPPORTED_VERSION:
        raise TaskFileError(
            f"unsupported task file version: {definition.version} (expected {SUPPORTED_VERSION})"
        )
    return definition


def build_tasks(
    definition: TaskFile,
    runner: str,
    repository_resolver: RepositoryResolver = resolve_repository_root,
) -> List[Task]:
    """
    Turn every entry into a PENDING task, validating all of them first.

    Raises:
        TaskFileError: On the first invalid entry; nothing is returned partially
    """
    default_auto_commit = definition.default_config.auto_commit if definition.default_config else False
    repo_cache = {}

    def resolve(path: str) -> str:
        if path not in repo_cache:
            try:
                repo_cache[path] = repository_resolver(path)
            except GitError as e:
                raise TaskFileError(f"cannot resolve repository '{path or '.'}': {e}") from e
        return repo_cache[path]

    tasks: List[Task] = []
    seen = set()
    for index, entry in enumerate(definition.tasks, start=1):
        where = f"task #{index}"
        if not entry.id.strip():
            raise TaskFileError(f"{where}: task ID is required")
        if entry.id in seen:
            raise TaskFileError(f"{where}: duplicate task ID in file: {entry.id}")
        seen.add(entry.id)

        repository = resolve(entry.repository.strip() or definition.repository.strip())
        auto_commit = entry.config.auto_commit if entry.config else default_auto_commit

        try:
            task = build_task(
                runner=runner,
                worktree=entry.worktree,
                name=entry.name,
                task_id=entry.id,
                repository=repository,
                base_branch=entry.base_branch or None,
                priority=entry.priority or DEFAULT_PRIORITY,
                depends_on=entry.depends_on,
                prompt=entry.prompt,
                files=entry.files_to_focus,
                verify=entry.verification_commands,
                auto_commit=auto_commit,
            )
        except ValueError as e:
            raise TaskFileError(f"{where} ({entry.id}): {e}") from e
        tasks.append(task)
    return tasks


def load_task_file(
    path: Path,
    runner: str,
    storage: TaskStorage,
    repository_resolver: RepositoryResolver = resolve_repository_root,
) -> List[Task]:
    """
    Import a task file into the store.

    Every entry is validated (including id collisions with the store)
    before the first one is saved.

    Raises:
        TaskFileError: If the file is unreadable or any entry is invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TaskFileError(f"failed to read task file: {path}: {e}") from e

    tasks = build_tasks(parse_task_file(text, str(path)), runner, repository_resolver)

    existing = [t.id for t in tasks if storage.exists(t.id)]
    if existing:
        raise TaskFileError(f"task ID already exists: {', '.join(existing)}")

    for task in tasks:
        storage.save(task)
    logger.info(f"Imported {len(tasks)} task(s) from {path}")
    return tasks
