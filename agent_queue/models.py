"""
Data models for the agent task queue.

Defines Pydantic models for tasks, execution records, log entries,
worker coordination records and configuration.
"""

import json
import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


MIN_PRIORITY = 1
MAX_PRIORITY = 100
DEFAULT_PRIORITY = 50


def now_iso() -> str:
    """Current UTC time as an RFC 3339 string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, returning None when it is missing or invalid."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_task_id() -> str:
    """Generate a short task id (6 hex chars)."""
    return uuid.uuid4().hex[:6]


def new_execution_id() -> str:
    """Generate a fresh execution id (exec-XXXXXX)."""
    return f"exec-{uuid.uuid4().hex[:6]}"


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def schedulable(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.WAITING)


class ExecutionStatus(str, Enum):
    """Status of a single execution attempt."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class Task(BaseModel):
    """
    A unit of queued agent work.

    Created in PENDING by an enqueue operation; only the worker moves it
    to RUNNING and then COMPLETED or FAILED. An operator reset (or crash
    recovery) puts it back to PENDING.
    """

    id: str = Field(default_factory=new_task_id, description="Opaque, filesystem-safe task id")
    runner: str = Field(..., description="Agent implementation to invoke (codex, claude)")
    name: str = Field(default="", description="Human readable task name")
    repository: Optional[str] = Field(default=None, description="Path to the source repository")
    worktree: str = Field(..., description="Target branch / worktree name")
    base_branch: Optional[str] = Field(default=None, description="Base branch used if the worktree must be created")
    priority: int = Field(default=DEFAULT_PRIORITY, description="1-100, higher runs first")
    depends_on: List[str] = Field(default_factory=list, description="Ids of tasks that must complete first")
    prompt: str = Field(default="", description="Prompt handed to the agent")
    files: List[str] = Field(default_factory=list, description="Advisory focus list")
    verify: List[str] = Field(default_factory=list, description="Shell commands run after a successful agent run")
    auto_commit: bool = Field(default=False, description="Commit worktree changes after a successful run")

    status: TaskStatus = Field(default=TaskStatus.PENDING)

    # Timestamps
    created_at: str = Field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    # Execution tracking
    session_id: Optional[str] = Field(default=None, description="Id of the most recent execution")
    last_error: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def clamp_priority(cls, v: Any) -> int:
        """Clamp priority into 1..100."""
        v = int(v)
        return max(MIN_PRIORITY, min(MAX_PRIORITY, v))

    @field_validator("depends_on")
    @classmethod
    def dedupe_dependencies(cls, v: List[str]) -> List[str]:
        """Drop blank and duplicate dependency ids, keeping order."""
        seen: List[str] = []
        for dep in v:
            dep = dep.strip()
            if dep and dep not in seen:
                seen.append(dep)
        return seen

    @field_validator("base_branch", "repository")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    def display_name(self) -> str:
        """Name for display, falling back to the prompt and then the id."""
        if self.name.strip():
            return self.name
        if self.prompt.strip():
            prompt = self.prompt.strip()
            return prompt if len(prompt) <= 60 else prompt[:57] + "..."
        return self.id

    def effective_prompt(self) -> str:
        """Prompt handed to the agent; an empty prompt falls back to the name."""
        if self.prompt.strip():
            return self.prompt
        return self.name


class ExecutionMetadata(BaseModel):
    """
    One record per attempt of a task.

    Created RUNNING immediately before the agent process is spawned and
    updated once to its terminal state.
    """

    execution_id: str = Field(default_factory=new_execution_id)
    task_id: str
    task_name: str = ""
    prompt: str = ""
    worktree: str = ""
    repository: str = ""
    working_directory: str = ""
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: str = Field(default_factory=now_iso)
    end_time: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None


class StructuredPayload(BaseModel):
    """Output line that parsed as a JSON object."""

    kind: Literal["structured"] = "structured"
    value: Dict[str, Any]

    def to_fields(self) -> Dict[str, Any]:
        return dict(self.value)


class TextPayload(BaseModel):
    """Output line kept as plain text."""

    kind: Literal["text"] = "text"
    text: str

    def to_fields(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}


LogPayload = Annotated[Union[StructuredPayload, TextPayload], Field(discriminator="kind")]


def parse_payload(line: str) -> Union[StructuredPayload, TextPayload]:
    """
    Decide once how an output line is stored.

    Only JSON objects become structured payloads; scalars, arrays and
    anything unparseable are kept as text.
    """
    try:
        value = json.loads(line)
    except ValueError:
        return TextPayload(text=line)
    if isinstance(value, dict):
        return StructuredPayload(value=value)
    return TextPayload(text=line)


class LogEntry(BaseModel):
    """A single captured output line of an execution."""

    timestamp: str = Field(default_factory=now_iso)
    execution_id: str
    task_id: str
    stream: Literal["stdout", "stderr"]
    payload: LogPayload

    def to_record(self) -> Dict[str, Any]:
        """Flatten into the on-disk JSONL shape; envelope keys win on collision."""
        record = self.payload.to_fields()
        record.update(
            timestamp=self.timestamp,
            execution_id=self.execution_id,
            task_id=self.task_id,
            stream=self.stream,
        )
        return record

    def to_json_line(self) -> str:
        return json.dumps(self.to_record(), ensure_ascii=False, default=str) + "\n"


class WorkerLock(BaseModel):
    """Singleton lock record, present only while a worker is active."""

    pid: int
    started_at: str = Field(default_factory=now_iso)


class WorkerStatusReport(BaseModel):
    """Worker status as reported to the CLI."""

    running: bool = False
    pid: Optional[int] = None
    started_at: Optional[str] = None
    stop_requested: bool = False
    counts: Dict[str, int] = Field(default_factory=dict)


class MissingDependencyPolicy(str, Enum):
    """What to do with a task whose dependency id does not resolve."""
    WAIT = "wait"   # hold the task back indefinitely
    FAIL = "fail"   # fail it fast like a failed dependency


class QueueSettings(BaseModel):
    """Task queue and worker settings."""

    enabled: bool = Field(default=True, description="Enable the task system")
    queue_dir: str = Field(default="~/.config/agent-queue/tasks", description="Queue directory")

    # Scheduling
    max_parallel: int = Field(default=3, description="Maximum concurrent executions")
    poll_interval: str = Field(default="5s", description="Scheduler poll interval")
    missing_dependency_policy: MissingDependencyPolicy = Field(default=MissingDependencyPolicy.WAIT)

    # Runners
    codex_executable: str = "codex"
    codex_timeout: str = "30m"
    claude_executable: str = "claude"
    claude_timeout: str = "30m"
    verify_timeout: str = "30m"

    # Log retention
    log_retention_days: int = Field(default=30, description="Delete finished executions older than this at startup")
    auto_cleanup: bool = True

    # Watchdog settings
    watch_enabled: bool = Field(default=True, description="Wake the worker on queue directory changes")

    @field_validator("max_parallel")
    @classmethod
    def validate_max_parallel(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_parallel must be >= 1")
        return v

    @field_validator("log_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v < 0:
            raise ValueError("log_retention_days must be >= 0")
        return v


class WorktreeSettings(BaseModel):
    """Where new worktrees are created."""

    base_dir: str = Field(default="~/worktrees", description="Root directory for created worktrees")


class QueueConfig(BaseModel):
    """Complete configuration file."""

    version: str = "1.0"
    settings: QueueSettings = Field(default_factory=QueueSettings)
    worktree: WorktreeSettings = Field(default_factory=WorktreeSettings)

    # Metadata
    updated_at: str = Field(default_factory=now_iso)
