"""
Execution Store: per-attempt metadata plus an append-only structured log.

Layout under the queue directory:
- logs/metadata/<execution_id>.json  - one ExecutionMetadata record each
- logs/<execution_id>.jsonl          - one JSON object per captured line
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, TextIO

from agent_queue.atomic import AtomicFileWriter, remove_quietly
from agent_queue.models import (
    ExecutionMetadata,
    ExecutionStatus,
    new_execution_id,
    parse_iso,
)


logger = logging.getLogger(__name__)

_EXECUTION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ExecutionNotFoundError(LookupError):
    """Raised when an execution id has no metadata record."""


class ExecutionManager:
    """
    Durable storage of execution records and their logs.

    Metadata writes use the same write-temp-then-rename discipline as the
    task store; logs are opened in create-or-append mode and never
    truncated except by explicit retention cleanup.
    """

    def __init__(self, queue_dir: Path):
        self.queue_dir = Path(queue_dir)

    @property
    def log_dir(self) -> Path:
        return self.queue_dir / "logs"

    @property
    def metadata_dir(self) -> Path:
        return self.log_dir / "metadata"

    def log_path(self, execution_id: str) -> Path:
        _validate_execution_id(execution_id)
        return self.log_dir / f"{execution_id}.jsonl"

    def metadata_path(self, execution_id: str) -> Path:
        _validate_execution_id(execution_id)
        return self.metadata_dir / f"{execution_id}.json"

    @staticmethod
    def new_execution_id() -> str:
        return new_execution_id()

    def ensure_dirs(self) -> None:
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    # Metadata

    def save_metadata(self, meta: ExecutionMetadata) -> None:
        self.ensure_dirs()
        AtomicFileWriter.write_model(self.metadata_path(meta.execution_id), meta)

    def load_metadata(self, execution_id: str) -> ExecutionMetadata:
        """
        Load one execution record.

        Raises:
            ExecutionNotFoundError: If no metadata exists
            ValueError: If the record cannot be parsed
        """
        path = self.metadata_path(execution_id)
        try:
            return AtomicFileWriter.read_model(path, ExecutionMetadata)
        except FileNotFoundError as e:
            raise ExecutionNotFoundError(f"execution not found: {execution_id}") from e

    def list_metadata(self) -> List[ExecutionMetadata]:
        """All readable execution records, newest start_time first."""
        if not self.metadata_dir.exists():
            return []

        metas: List[ExecutionMetadata] = []
        for path in self.metadata_dir.glob("*.json"):
            try:
                metas.append(AtomicFileWriter.read_model(path, ExecutionMetadata))
            except (OSError, ValueError) as e:
                logger.debug(f"Skipping unreadable execution record {path.name}: {e}")

        metas.sort(key=lambda m: _start_of(m), reverse=True)
        return metas

    # Logs

    def open_log(self, execution_id: str) -> TextIO:
        """Open the execution log for appending (created if missing)."""
        self.ensure_dirs()
        return open(self.log_path(execution_id), "a", encoding="utf-8")

    def read_log(self, execution_id: str) -> str:
        return self.log_path(execution_id).read_text(encoding="utf-8", errors="replace")

    def log_exists(self, execution_id: str) -> bool:
        return self.log_path(execution_id).exists()

    def iter_log_records(self, execution_id: str) -> Iterator[Dict[str, Any]]:
        """
        Yield parsed log lines.

        Lines that are not JSON objects are yielded as {"raw": line}.
        """
        if not self.log_exists(execution_id):
            return
        with open(self.log_path(execution_id), "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    record = None
                yield record if isinstance(record, dict) else {"raw": line}

    # Deletion

    def delete_execution(self, execution_id: str) -> None:
        """Remove metadata and log; missing files are not errors."""
        remove_quietly(self.log_path(execution_id))
        remove_quietly(self.metadata_path(execution_id))

    def cleanup_older_than(self, age: timedelta, now: Optional[datetime] = None) -> List[str]:
        """
        Delete finished executions that started before now - age.

        Running executions are never deleted. Records with an unparseable
        start time are treated as infinitely old.

        Returns:
            Deleted execution ids
        """
        cutoff = (now or datetime.now(timezone.utc)) - age
        deleted = []
        for meta in self.old_executions(cutoff):
            self.delete_execution(meta.execution_id)
            deleted.append(meta.execution_id)
        if deleted:
            logger.info(f"Removed {len(deleted)} execution(s) older than {cutoff.isoformat()}")
        return deleted

    def old_executions(self, cutoff: datetime) -> List[ExecutionMetadata]:
        """Non-running executions that started before cutoff."""
        return [
            meta for meta in self.list_metadata()
            if meta.status != ExecutionStatus.RUNNING and _start_of(meta) < cutoff
        ]

    # Inspection

    def filter_executions(
        self,
        executions: List[ExecutionMetadata],
        status: str = "",
        date: str = "",
        contains: str = "",
    ) -> List[ExecutionMetadata]:
        """Apply the CLI list filters (status, start date YYYY-MM-DD, text search)."""
        out = list(executions)
        if status.strip():
            want = status.strip().lower()
            out = [e for e in out if e.status.value == want]
        if date.strip():
            want = date.strip()
            out = [e for e in out if _start_of(e) != _EPOCH and _start_of(e).date().isoformat() == want]
        if contains.strip():
            needle = contains.lower()
            out = [e for e in out if self._contains(e, needle)]
        return out

    def _contains(self, meta: ExecutionMetadata, needle: str) -> bool:
        hay = "\n".join(
            [meta.execution_id, meta.task_id, meta.task_name, meta.worktree, meta.repository, meta.prompt]
        ).lower()
        if needle in hay:
            return True
        if self.log_exists(meta.execution_id):
            return needle in self.read_log(meta.execution_id).lower()
        return False


def render_log_record(record: Dict[str, Any]) -> str:
    """
    Render one log record as a human readable line.

    Text payloads show their text; structured payloads show their type
    and the first message-like field found, otherwise the payload JSON.
    """
    if "raw" in record and len(record) == 1:
        return record["raw"]

    ts = record.get("timestamp", "")
    stream = record.get("stream", "")
    prefix = f"[{ts}] {stream}:" if ts else f"{stream}:"

    if record.get("type") == "text" and "text" in record:
        return f"{prefix} {record['text']}"

    envelope = {"timestamp", "execution_id", "task_id", "stream"}
    payload = {k: v for k, v in record.items() if k not in envelope}
    kind = payload.get("type")
    for key in ("text", "message", "result", "content"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return f"{prefix} [{kind}] {value}" if kind else f"{prefix} {value}"
    return f"{prefix} {json.dumps(payload, ensure_ascii=False, default=str)}"


def _start_of(meta: ExecutionMetadata) -> datetime:
    return parse_iso(meta.start_time) or _EPOCH


def _validate_execution_id(execution_id: str) -> None:
    if not execution_id or not _EXECUTION_ID_RE.match(execution_id) or ".." in execution_id:
        raise ValueError(f"invalid execution ID '{execution_id}'")
