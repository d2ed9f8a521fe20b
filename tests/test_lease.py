"""Tests for the worker lease and stop signals."""

import asyncio
import json

import pytest

from agent_queue.lease import (
    CancellationToken,
    FileWorkerLease,
    InMemoryWorkerLease,
    StopMarker,
    WorkerAlreadyRunningError,
    load_worker_lock,
)


class TestFileWorkerLease:
    """Tests for the worker.lock singleton."""

    def test_acquire_writes_lock(self, queue_dir):
        """Test acquire writes lock."""
        lease = FileWorkerLease(queue_dir, pid=4242)
        record = lease.acquire()
        data = json.loads((queue_dir / "worker.lock").read_text())
        assert data["pid"] == 4242
        assert data["started_at"] == record.started_at
        assert lease.is_held()

    def test_second_acquire_fails_without_touching_lock(self, queue_dir):
        """Test second acquire fails without touching lock."""
        FileWorkerLease(queue_dir, pid=1).acquire()
        before = (queue_dir / "worker.lock").read_text()

        with pytest.raises(WorkerAlreadyRunningError, match="worker already running"):
            FileWorkerLease(queue_dir, pid=2).acquire()

        assert (queue_dir / "worker.lock").read_text() == before

    def test_release_removes_lock(self, queue_dir):
        """Test release removes lock."""
        lease = FileWorkerLease(queue_dir)
        lease.acquire()
        lease.release()
        lease.release()
        assert not (queue_dir / "worker.lock").exists()
        assert load_worker_lock(queue_dir) is None

    def test_non_owner_release_keeps_lock(self, queue_dir):
        """Test non owner release keeps lock."""
        FileWorkerLease(queue_dir, pid=1).acquire()
        FileWorkerLease(queue_dir, pid=2).release()
        assert (queue_dir / "worker.lock").exists()

    def test_unreadable_lock_still_counts_as_held(self, queue_dir):
        """Test unreadable lock still counts as held."""
        (queue_dir / "worker.lock").write_text("garbage")
        lock = load_worker_lock(queue_dir)
        assert lock is not None
        assert lock.pid == 0


class TestInMemoryWorkerLease:
    """Tests for the in-memory lease."""

    def test_single_holder(self):
        """Test single holder."""
        lease = InMemoryWorkerLease(pid=7)
        assert lease.acquire().pid == 7
        with pytest.raises(WorkerAlreadyRunningError):
            lease.acquire()
        lease.release()
        assert not lease.is_held()
        lease.acquire()


class TestStopSignals:
    """Tests for stop marker and cancellation token."""

    def test_stop_marker(self, queue_dir):
        """Test stop marker."""
        marker = StopMarker(queue_dir)
        assert not marker.is_set()
        marker.request()
        assert (queue_dir / "worker.stop").exists()
        assert marker.is_set()
        assert marker.clear() is True
        assert marker.clear() is False

    @pytest.mark.asyncio
    async def test_cancellation_token_wakes_waiter(self):
        """Test cancellation token wakes waiter."""
        token = CancellationToken()
        event = asyncio.Event()
        token.bind(event)
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        await asyncio.wait_for(event.wait(), timeout=2)
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_cancel_before_bind(self):
        """Test cancel before bind."""
        token = CancellationToken()
        token.cancel()
        event = asyncio.Event()
        token.bind(event)
        assert event.is_set()
