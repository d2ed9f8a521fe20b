"""
Atomic file operations and file locking utilities.

Every record in the queue directory is written through these helpers so
that concurrent readers only ever observe a complete old or new record.
"""

import os
import fcntl
import json
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)


class AtomicFileWriter:
    """
    Atomic file writer using temp file + atomic replace.

    Writes to a temporary file in the target directory first, fsyncs it,
    then atomically replaces the target file using os.replace().
    """

    @staticmethod
    def write_text(filepath: Path, content: str) -> None:
        """
        Atomically replace a file with the given text.

        Args:
            filepath: Target file path
            content: Full file content

        Raises:
            OSError: If the write fails (temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                tmp_file.write(content)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            # Atomic replace (POSIX guarantees this is atomic)
            os.replace(temp_path, filepath)
            temp_path = None
        finally:
            if temp_path is not None and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> None:
        """Atomically write JSON data to a file."""
        AtomicFileWriter.write_text(
            filepath, json.dumps(data, indent=indent, default=str, ensure_ascii=False) + "\n"
        )

    @staticmethod
    def write_model(filepath: Path, model: BaseModel, indent: int = 2) -> None:
        """Atomically write a pydantic model as JSON."""
        AtomicFileWriter.write_json(filepath, model.model_dump(mode="json"), indent=indent)

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """
        Read JSON file with safe defaults.

        Args:
            filepath: File to read
            default: Default value if file doesn't exist or is invalid

        Returns:
            Parsed JSON data or default value
        """
        filepath = Path(filepath)

        if not filepath.exists():
            return default

        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (ValueError, OSError):
            return default

    @staticmethod
    def read_model(filepath: Path, model_cls: Type[ModelT]) -> ModelT:
        """
        Read and validate a JSON record.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not valid JSON or fails validation
        """
        filepath = Path(filepath)
        with open(filepath, "r", encoding="utf-8") as f:
            raw = f.read()
        try:
            return model_cls.model_validate_json(raw)
        except ValidationError as e:
            raise ValueError(f"failed to parse {filepath}: {e}") from e


def create_exclusive(filepath: Path, content: str) -> bool:
    """
    Create a file only if it does not exist yet.

    Uses O_CREAT | O_EXCL so two processes racing for the same path cannot
    both succeed.

    Returns:
        True if the file was created, False if it already existed
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(filepath, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    return True


def remove_quietly(filepath: Path) -> bool:
    """Remove a file, treating absence as success. Returns True if removed."""
    try:
        Path(filepath).unlink()
        return True
    except FileNotFoundError:
        return False


class FileLock:
    """
    File-based lock using fcntl for inter-process synchronization.

    Guards read-modify-write cycles on the configuration file.

    Usage:
        with FileLock(path):
            ...
    """

    def __init__(self, lockfile: Path):
        self.lockfile = Path(lockfile)
        self.fd: Optional[Any] = None

    def acquire(self, timeout: float = 10.0) -> bool:
        """
        Acquire exclusive lock with timeout.

        Args:
            timeout: Maximum seconds to wait for lock

        Returns:
            True if lock acquired, False if timeout
        """
        self.lockfile.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout

        while True:
            fd = open(self.lockfile, "a")
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                fd.close()
                if time.monotonic() >= deadline:
                    return False
                time.sleep(0.1)
                continue
            self.fd = fd
            return True

    def release(self) -> None:
        """Release the lock."""
        if self.fd:
            try:
                fcntl.flock(self.fd.fileno(), fcntl.LOCK_UN)
            finally:
                self.fd.close()
                self.fd = None

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock: {self.lockfile}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
