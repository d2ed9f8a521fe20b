"""
Agent Queue - run coding-agent tasks against git worktrees.

File-per-record state under one queue directory:
- task-<id>.json                 - one task each
- logs/metadata/<exec-id>.json   - one execution attempt each
- logs/<exec-id>.jsonl           - captured agent output
- worker.lock / worker.stop      - singleton worker lease / stop request
"""

__version__ = "0.3.0"

from agent_queue.models import (
    Task,
    TaskStatus,
    ExecutionMetadata,
    ExecutionStatus,
    LogEntry,
    QueueConfig,
    QueueSettings,
)

from agent_queue.config import ConfigManager, DEFAULT_CONFIG_FILE
from agent_queue.storage import TaskStorage
from agent_queue.execution import ExecutionManager
from agent_queue.process_runner import ProcessRunner, RunnerSpec
from agent_queue.worker import QueueWorker, WorkerConfig

__all__ = [
    # Models
    "Task",
    "TaskStatus",
    "ExecutionMetadata",
    "ExecutionStatus",
    "LogEntry",
    "QueueConfig",
    "QueueSettings",
    # Config
    "ConfigManager",
    "DEFAULT_CONFIG_FILE",
    # Components
    "TaskStorage",
    "ExecutionManager",
    "ProcessRunner",
    "RunnerSpec",
    "QueueWorker",
    "WorkerConfig",
]
