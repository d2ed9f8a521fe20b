"""Tests for atomic file helpers."""

import json

import pytest

from agent_queue.atomic import AtomicFileWriter, FileLock, create_exclusive, remove_quietly
from agent_queue.models import Task, WorkerLock


class TestAtomicFileWriter:
    """Tests for AtomicFileWriter."""

    def test_write_json_creates_parent_dirs(self, temp_dir):
        """Test write json creates parent dirs."""
        target = temp_dir / "nested" / "dir" / "data.json"
        AtomicFileWriter.write_json(target, {"a": 1, "b": [1, 2]})
        assert json.loads(target.read_text()) == {"a": 1, "b": [1, 2]}

    def test_overwrite_leaves_no_temp_files(self, temp_dir):
        """Test overwrite leaves no temp files."""
        target = temp_dir / "data.json"
        for i in range(5):
            AtomicFileWriter.write_json(target, {"n": i})
        assert json.loads(target.read_text()) == {"n": 4}
        assert [p.name for p in temp_dir.iterdir()] == ["data.json"]

    def test_read_json_default(self, temp_dir):
        """Test read json default."""
        assert AtomicFileWriter.read_json(temp_dir / "missing.json", default={}) == {}
        broken = temp_dir / "broken.json"
        broken.write_text("{not json")
        assert AtomicFileWriter.read_json(broken, default="fallback") == "fallback"

    def test_model_round_trip(self, temp_dir, sample_task):
        """Test model round trip."""
        target = temp_dir / "task.json"
        AtomicFileWriter.write_model(target, sample_task)
        assert AtomicFileWriter.read_model(target, Task) == sample_task

    def test_read_model_missing_file(self, temp_dir):
        """Test read model missing file."""
        with pytest.raises(FileNotFoundError):
            AtomicFileWriter.read_model(temp_dir / "nope.json", Task)

    def test_read_model_invalid_record(self, temp_dir):
        """Test read model invalid record."""
        target = temp_dir / "bad.json"
        target.write_text('{"runner": "codex"}')
        with pytest.raises(ValueError, match="failed to parse"):
            AtomicFileWriter.read_model(target, Task)

    def test_read_model_truncated_json(self, temp_dir):
        """Test read model truncated json."""
        target = temp_dir / "bad.json"
        target.write_text('{"pid": 12')
        with pytest.raises(ValueError):
            AtomicFileWriter.read_model(target, WorkerLock)


class TestExclusiveCreate:
    """Tests for exclusive file creation."""

    def test_only_first_create_wins(self, temp_dir):
        """Test only first create wins."""
        target = temp_dir / "worker.lock"
        assert create_exclusive(target, "first") is True
        assert create_exclusive(target, "second") is False
        assert target.read_text() == "first"

    def test_remove_quietly(self, temp_dir):
        """Test remove quietly."""
        target = temp_dir / "file"
        target.write_text("x")
        assert remove_quietly(target) is True
        assert remove_quietly(target) is False


class TestFileLock:
    """Tests for FileLock."""

    def test_context_manager(self, temp_dir):
        """Test context manager."""
        lock_path = temp_dir / "config.lock"
        with FileLock(lock_path) as lock:
            assert lock.fd is not None
        assert lock.fd is None

    def test_second_acquire_times_out(self, temp_dir):
        """Test second acquire times out."""
        lock_path = temp_dir / "config.lock"
        first = FileLock(lock_path)
        second = FileLock(lock_path)
        assert first.acquire()
        try:
            assert second.acquire(timeout=0.2) is False
        finally:
            first.release()
        assert second.acquire(timeout=0.2) is True
        second.release()
