"""
Queue worker: the scheduling loop that runs agent tasks.

One worker per queue directory (guarded by the singleton lease). The loop
runs on asyncio; each launched task is an independent coroutine bounded by
max_parallel. The loop wakes on:
- the poll interval
- completion of any in-flight execution
- a stop request (stop marker, cancellation token, SIGINT/SIGTERM)
- a watchdog event in the queue directory
"""

import asyncio
import atexit
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from agent_queue.config import build_runner_specs, duration_seconds, expand_path
from agent_queue.execution import ExecutionManager
from agent_queue.lease import (
    CancellationToken,
    FileWorkerLease,
    StopMarker,
    WorkerLease,
    load_worker_lock,
    lock_path,
    stop_path,
)
from agent_queue.models import (
    ExecutionMetadata,
    ExecutionStatus,
    MissingDependencyPolicy,
    QueueSettings,
    Task,
    TaskStatus,
    WorkerLock,
    WorkerStatusReport,
    now_iso,
)
from agent_queue.process_runner import ProcessRunner, RunnerError, RunnerSpec
from agent_queue.storage import TaskNotFoundError, TaskStorage, TaskStoreError
from agent_queue.watchdog import QueueDirectoryWatcher
from agent_queue.worktree import (
    GitError,
    ResolverFactory,
    WorktreeError,
    auto_commit,
    ensure_worktree,
    git_resolver_factory,
)


logger = logging.getLogger(__name__)

RECOVERY_ERROR = "previous worker stopped unexpectedly; task reset to pending"
ABORTED_ERROR = "worker stopped before the execution finished"
STOP_POLL_INTERVAL = 0.2  # seconds


def configure_logging(level: int = logging.INFO) -> None:
    """Log format used by the worker process."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Suppress verbose watchdog library logging
    logging.getLogger("watchdog.observers.inotify_buffer").setLevel(logging.WARNING)
    logging.getLogger("watchdog.observers").setLevel(logging.WARNING)


@dataclass
class WorkerConfig:
    """Settings for one worker run."""

    queue_dir: Path
    parallel: int = 3
    poll_interval: float = 5.0
    wait: bool = False
    runners: Dict[str, RunnerSpec] = field(default_factory=dict)
    verify_timeout: float = 1800.0
    retention_days: int = 30
    auto_cleanup: bool = True
    watch: bool = True
    missing_dependency_policy: MissingDependencyPolicy = MissingDependencyPolicy.WAIT
    worktree_base_dir: Path = field(default_factory=lambda: Path("~/worktrees").expanduser())
    idle_polls_before_exit: int = 2

    def __post_init__(self):
        self.queue_dir = Path(self.queue_dir)
        if self.parallel < 1:
            raise ValueError("parallel must be >= 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

    @classmethod
    def from_settings(
        cls,
        settings: QueueSettings,
        worktree_base_dir: Optional[Path] = None,
        parallel: Optional[int] = None,
        wait: bool = False,
    ) -> "WorkerConfig":
        return cls(
            queue_dir=expand_path(settings.queue_dir),
            parallel=parallel if parallel is not None else settings.max_parallel,
            poll_interval=duration_seconds(settings.poll_interval),
            wait=wait,
            runners=build_runner_specs(settings),
            verify_timeout=duration_seconds(settings.verify_timeout),
            retention_days=settings.log_retention_days,
            auto_cleanup=settings.auto_cleanup,
            watch=settings.watch_enabled,
            missing_dependency_policy=settings.missing_dependency_policy,
            worktree_base_dir=worktree_base_dir or Path("~/worktrees").expanduser(),
        )


# Dependency resolution

READY = "ready"
BLOCKED = "blocked"
DEP_FAILED = "failed"


def dependency_state(
    task: Task,
    by_id: Dict[str, Task],
    policy: MissingDependencyPolicy = MissingDependencyPolicy.WAIT,
) -> Tuple[str, Optional[str]]:
    """
    Classify a task's dependencies.

    Dependencies are checked in order and the first one that is not
    completed decides the outcome.

    Returns:
        (READY, None), (BLOCKED, dep_id) or (DEP_FAILED, reason)
    """
    for dep in task.depends_on:
        dep_task = by_id.get(dep)
        if dep_task is None:
            if policy == MissingDependencyPolicy.FAIL:
                return DEP_FAILED, f"dependency not found: {dep}"
            return BLOCKED, dep
        if dep_task.status == TaskStatus.FAILED:
            return DEP_FAILED, f"dependency failed: {dep}"
        if dep_task.status != TaskStatus.COMPLETED:
            return BLOCKED, dep
    return READY, None


def ready_tasks(
    tasks: List[Task],
    policy: MissingDependencyPolicy = MissingDependencyPolicy.WAIT,
) -> Tuple[List[str], bool]:
    """
    Compute the ready set.

    Tasks whose dependencies failed are included so they can be failed
    quickly without launching an agent.

    Returns:
        (ready ids sorted by priority desc then id asc, whether any task is pending/waiting)
    """
    by_id = {t.id: t for t in tasks}
    ready: List[Task] = []
    has_pending = False

    for task in tasks:
        if not task.status.schedulable:
            continue
        has_pending = True
        state, _ = dependency_state(task, by_id, policy)
        if state in (READY, DEP_FAILED):
            ready.append(task)

    ready.sort(key=lambda t: (-t.priority, t.id))
    return [t.id for t in ready], has_pending


def reset_stale_running(storage: TaskStorage, executions: Optional[ExecutionManager] = None) -> List[str]:
    """
    Crash recovery: return RUNNING tasks to PENDING and abort RUNNING executions.

    Only called while holding the lease, so anything still RUNNING belongs
    to a worker that is gone.

    Returns:
        Ids of the tasks that were reset
    """
    reset = []
    for task in storage.list():
        if task.status != TaskStatus.RUNNING:
            continue
        task.status = TaskStatus.PENDING
        task.last_error = RECOVERY_ERROR
        storage.save(task)
        reset.append(task.id)
        logger.warning(f"[{task.id}] Found RUNNING at startup, reset to pending")

    if executions is not None:
        for meta in executions.list_metadata():
            if meta.status != ExecutionStatus.RUNNING:
                continue
            meta.status = ExecutionStatus.ABORTED
            meta.end_time = now_iso()
            meta.error = ABORTED_ERROR
            executions.save_metadata(meta)
            logger.warning(f"[{meta.task_id}] Execution {meta.execution_id} marked aborted")

    return reset


class QueueWorker:
    """
    Scheduler for one queue directory.

    Usage:
        worker = QueueWorker(WorkerConfig(queue_dir=...))
        asyncio.run(worker.run())
    """

    def __init__(
        self,
        config: WorkerConfig,
        storage: Optional[TaskStorage] = None,
        executions: Optional[ExecutionManager] = None,
        lease: Optional[WorkerLease] = None,
        process_runner: Optional[ProcessRunner] = None,
        resolver_factory: Optional[ResolverFactory] = None,
        token: Optional[CancellationToken] = None,
        install_signal_handlers: bool = True,
    ):
        self.config = config
        self.storage = storage or TaskStorage(config.queue_dir)
        self.executions = executions or ExecutionManager(config.queue_dir)
        self.lease = lease or FileWorkerLease(config.queue_dir)
        self.process_runner = process_runner or ProcessRunner()
        self.resolver_factory = resolver_factory or git_resolver_factory(config.worktree_base_dir)
        self.token = token or CancellationToken()
        self.stop_marker = StopMarker(config.queue_dir)
        self.install_signal_handlers = install_signal_handlers

        self._wake: Optional[asyncio.Event] = None
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._cleaned_up = True

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def stop(self) -> None:
        """Request a graceful stop from inside this process."""
        self.token.cancel()

    # Lifecycle

    async def run(self) -> None:
        """
        Run until the queue drains (unless wait is set) or a stop is requested.

        Raises:
            WorkerAlreadyRunningError: If another worker holds the lease
            OSError: If the queue directory cannot be created
        """
        lock = self._startup()
        try:
            if self.stop_marker.clear():
                logger.info("Removed stale stop marker")

            reset_stale_running(self.storage, self.executions)

            logger.info(f"Queue directory: {self.config.queue_dir}")
            logger.info(f"Max parallel: {self.config.parallel}, poll interval: {self.config.poll_interval}s")
            logger.info(f"Worker pid {lock.pid} started at {lock.started_at}")

            await self._loop()
        finally:
            self._cleanup()

    def _startup(self) -> WorkerLock:
        """Create directories, apply log retention and take the lease."""
        logger.info("=" * 60)
        logger.info("Agent Queue Worker Starting")
        logger.info("=" * 60)

        self.storage.ensure_dir()
        self.executions.ensure_dirs()

        if self.config.auto_cleanup and self.config.retention_days > 0:
            try:
                self.executions.cleanup_older_than(timedelta(days=self.config.retention_days))
            except (OSError, ValueError) as e:
                logger.warning(f"Execution log cleanup failed: {e}")

        lock = self.lease.acquire()
        self._cleaned_up = False
        atexit.register(self._cleanup)
        return lock

    def _cleanup(self) -> None:
        """Remove the lock and stop marker; also runs from atexit."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.lease.release()
        self.stop_marker.clear()
        atexit.unregister(self._cleanup)

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self.token.bind(self._wake)

        signals = self._install_signal_handlers(loop)
        watcher = self._start_watcher(loop)

        idle_polls = 0
        try:
            while True:
                if self.token.cancelled:
                    logger.info("Stop requested, no new tasks will be launched")
                    break
                if self.stop_marker.is_set():
                    logger.info("Stop marker found, no new tasks will be launched")
                    break

                self._reap()

                capacity = self.config.parallel - len(self._in_flight)
                if capacity > 0:
                    tasks = self.storage.list()
                    ready, has_pending = ready_tasks(tasks, self.config.missing_dependency_policy)
                    ready = [task_id for task_id in ready if task_id not in self._in_flight]

                    if not ready and not has_pending and not self._in_flight:
                        idle_polls += 1
                        if not self.config.wait and idle_polls >= self.config.idle_polls_before_exit:
                            logger.info("No pending tasks, exiting")
                            break
                    else:
                        idle_polls = 0
                        for task_id in ready[:capacity]:
                            self._launch(task_id)

                await self._wait_for_wakeup()
        finally:
            if watcher is not None:
                watcher.stop()
            for sig in signals:
                loop.remove_signal_handler(sig)
            await self._drain()

    def _launch(self, task_id: str) -> None:
        logger.info(f"[{task_id}] Launching ({len(self._in_flight) + 1}/{self.config.parallel})")
        self._in_flight[task_id] = asyncio.create_task(self._execute_task(task_id))

    def _reap(self) -> None:
        for task_id, job in list(self._in_flight.items()):
            if not job.done():
                continue
            del self._in_flight[task_id]
            if not job.cancelled() and job.exception() is not None:
                logger.error(f"[{task_id}] Execution crashed: {job.exception()}")

    async def _wait_for_wakeup(self) -> None:
        waiter = asyncio.create_task(self._wake.wait())
        try:
            await asyncio.wait(
                [waiter, *self._in_flight.values()],
                timeout=self.config.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        self._wake.clear()

    async def _drain(self) -> None:
        """Wait for every in-flight execution; never cancels agent processes."""
        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} running task(s) to finish...")
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
        self._reap()

        counts = self.storage.status_counts()
        summary = ", ".join(f"{status}={count}" for status, count in counts.items()) or "no tasks"
        logger.info(f"Worker stopped ({summary})")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> List[int]:
        if not self.install_signal_handlers:
            return []
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"Cannot install handler for {sig}: {e}")
                continue
            installed.append(sig)
        return installed

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.token.cancel()

    def _start_watcher(self, loop: asyncio.AbstractEventLoop) -> Optional[QueueDirectoryWatcher]:
        if not self.config.watch:
            logger.info("Watchdog monitoring is disabled")
            return None

        wake = self._wake

        def on_change(path: str) -> None:
            loop.call_soon_threadsafe(wake.set)

        watcher = QueueDirectoryWatcher(self.config.queue_dir, on_change)
        watcher.start()
        return watcher

    # Per-task execution

    async def _execute_task(self, task_id: str) -> None:
        """Run one attempt of a task; every failure is recorded, never raised."""
        try:
            task = self.storage.load(task_id)
        except TaskNotFoundError:
            logger.warning(f"[{task_id}] Task disappeared before launch")
            return
        except TaskStoreError as e:
            logger.error(f"[{task_id}] Cannot load task: {e}")
            return

        if not task.status.schedulable:
            logger.debug(f"[{task_id}] Status is {task.status.value}, skipping")
            return

        reason = self._fail_fast_reason(task)
        if reason is not None:
            task.status = TaskStatus.FAILED
            task.last_error = reason
            task.completed_at = now_iso()
            self._save_task_quietly(task)
            logger.warning(f"[{task_id}] {reason}")
            return

        meta: Optional[ExecutionMetadata] = None
        try:
            task.status = TaskStatus.RUNNING
            task.started_at = now_iso()
            task.last_error = None
            self.storage.save(task)

            execution_id = self.executions.new_execution_id()
            task.session_id = execution_id
            self.storage.save(task)

            prompt = task.effective_prompt()
            meta = ExecutionMetadata(
                execution_id=execution_id,
                task_id=task.id,
                task_name=task.name,
                prompt=prompt,
                worktree=task.worktree,
                repository=task.repository or "",
            )
            self.executions.save_metadata(meta)

            try:
                repo_root, workdir = await asyncio.to_thread(self._resolve_worktree, task)
            except (GitError, WorktreeError, OSError) as e:
                logger.error(f"[{task_id}] Worktree resolution failed: {e}")
                self._finish(task, meta, success=False, exit_code=None, error=str(e))
                return

            meta.repository = str(repo_root)
            meta.working_directory = str(workdir)
            self.executions.save_metadata(meta)

            logger.info(f"[{task_id}] Running {task.runner} in {workdir} (execution {execution_id})")
            success, exit_code, error = await self._run_agent(task, meta, prompt, workdir)

            if success and task.verify:
                error = await self._run_verify(task, meta, workdir)
                success = error is None

            if success and task.auto_commit:
                message = f"agent-queue task {task.id}: {task.name}"
                try:
                    committed = await asyncio.to_thread(auto_commit, workdir, message)
                except GitError as e:
                    success, error = False, f"auto-commit failed: {e}"
                else:
                    if committed:
                        logger.info(f"[{task_id}] Committed changes in {workdir}")

            self._finish(task, meta, success=success, exit_code=exit_code, error=error)
        except Exception as e:
            logger.error(f"[{task_id}] Attempt failed: {e}", exc_info=True)
            self._finish_quietly(task, meta, str(e))

    def _fail_fast_reason(self, task: Task) -> Optional[str]:
        by_id: Dict[str, Task] = {}
        for dep in task.depends_on:
            try:
                by_id[dep] = self.storage.load(dep)
            except (TaskStoreError, ValueError):
                continue
        # Only a failed (or, under the fail policy, missing) dependency counts here
        for dep in task.depends_on:
            dep_task = by_id.get(dep)
            if dep_task is not None and dep_task.status == TaskStatus.FAILED:
                return f"dependency failed: {dep}"
            if dep_task is None and self.config.missing_dependency_policy == MissingDependencyPolicy.FAIL:
                return f"dependency not found: {dep}"
        return None

    def _resolve_worktree(self, task: Task) -> Tuple[Path, Path]:
        resolver = self.resolver_factory(task.repository)
        workdir = ensure_worktree(resolver, task.worktree, task.base_branch)
        return Path(resolver.repo_root), Path(workdir)

    async def _run_agent(
        self, task: Task, meta: ExecutionMetadata, prompt: str, workdir: Path
    ) -> Tuple[bool, Optional[int], Optional[str]]:
        runner_name = task.runner.strip().lower()
        spec = self.config.runners.get(runner_name)
        if spec is None:
            return False, None, f"unsupported runner: {runner_name}"

        argv = spec.build_args(prompt, workdir)
        try:
            with self.executions.open_log(meta.execution_id) as log:
                exit_code = await self.process_runner.run(
                    argv,
                    workdir,
                    prompt_stdin=prompt if spec.prompt_via_stdin else None,
                    timeout=spec.timeout,
                    log=log,
                    execution_id=meta.execution_id,
                    task_id=task.id,
                )
        except RunnerError as e:
            logger.error(f"[{task.id}] {e}")
            return False, None, str(e)

        if exit_code != 0:
            logger.warning(f"[{task.id}] Runner exited with code {exit_code}")
            return False, exit_code, f"runner exited with code {exit_code}"
        return True, exit_code, None

    async def _run_verify(self, task: Task, meta: ExecutionMetadata, workdir: Path) -> Optional[str]:
        """Run verify commands in order; the first failure stops the rest."""
        with self.executions.open_log(meta.execution_id) as log:
            for command in task.verify:
                if not command.strip():
                    continue
                logger.info(f"[{task.id}] Verify: {command}")
                try:
                    code = await self.process_runner.run_shell(
                        command,
                        workdir,
                        timeout=self.config.verify_timeout,
                        log=log,
                        execution_id=meta.execution_id,
                        task_id=task.id,
                    )
                except RunnerError as e:
                    return f"verification failed: {command}: {e}"
                if code != 0:
                    return f"verification failed: command exited with code {code}: {command}"
        return None

    def _finish(
        self,
        task: Task,
        meta: ExecutionMetadata,
        success: bool,
        exit_code: Optional[int],
        error: Optional[str],
    ) -> None:
        """Persist the terminal state on both records (execution first)."""
        finished = now_iso()

        meta.status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
        meta.end_time = finished
        meta.exit_code = exit_code
        meta.error = error
        self.executions.save_metadata(meta)

        task.status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        task.completed_at = finished
        task.last_error = error
        self.storage.save(task)

        if success:
            logger.info(f"[{task.id}] Completed")
        else:
            logger.warning(f"[{task.id}] Failed: {error}")

    def _finish_quietly(self, task: Task, meta: Optional[ExecutionMetadata], error: str) -> None:
        if meta is not None:
            meta.status = ExecutionStatus.FAILED
            meta.end_time = now_iso()
            meta.error = error
            try:
                self.executions.save_metadata(meta)
            except OSError as e:
                logger.error(f"[{task.id}] Cannot record execution failure: {e}")
        task.status = TaskStatus.FAILED
        task.completed_at = now_iso()
        task.last_error = error
        self._save_task_quietly(task)

    def _save_task_quietly(self, task: Task) -> None:
        try:
            self.storage.save(task)
        except TaskStoreError as e:
            logger.error(f"[{task.id}] Cannot persist task state: {e}")


# Operations used by the CLI

def run_worker(config: WorkerConfig, **kwargs) -> None:
    """Run a worker to completion in a fresh event loop."""
    asyncio.run(QueueWorker(config, **kwargs).run())


async def request_stop(queue_dir: Path, timeout: float) -> bool:
    """
    Ask a running worker to stop and wait for it to release its lock.

    Returns:
        False if no worker is running or it did not stop within timeout
    """
    queue_dir = Path(queue_dir)
    if load_worker_lock(queue_dir) is None:
        return False

    StopMarker(queue_dir).request()

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if not lock_path(queue_dir).exists():
            return True
        await asyncio.sleep(STOP_POLL_INTERVAL)
    return not lock_path(queue_dir).exists()


def worker_status(queue_dir: Path, tasks: List[Task]) -> WorkerStatusReport:
    """Lock presence, pid, stop flag and per-status counts."""
    lock = load_worker_lock(queue_dir)
    counts: Dict[str, int] = {}
    for task in tasks:
        counts[task.status.value] = counts.get(task.status.value, 0) + 1
    return WorkerStatusReport(
        running=lock is not None,
        pid=lock.pid if lock else None,
        started_at=lock.started_at if lock else None,
        stop_requested=stop_path(queue_dir).exists(),
        counts=dict(sorted(counts.items())),
    )
