"""Test fixtures for agent-queue tests."""

import asyncio
import shutil
import subprocess
import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from agent_queue.execution import ExecutionManager
from agent_queue.lease import InMemoryWorkerLease
from agent_queue.models import Task, TaskStatus
from agent_queue.process_runner import ExecutionLogWriter, ProcessRunner, RunnerSpec
from agent_queue.storage import TaskStorage
from agent_queue.worker import QueueWorker, WorkerConfig
from agent_queue.worktree import Worktree, WorktreeError, sanitize_for_filesystem


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path_factory):
    """Keep the operator's ~/.config/agent-queue out of every test."""
    for name in (
        "AGENT_QUEUE_CONFIG",
        "AGENT_QUEUE_DIR",
        "AGENT_QUEUE_CODEX",
        "AGENT_QUEUE_CLAUDE",
        "AGENT_QUEUE_MAX_PARALLEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("agent_queue.config.ENV_FILE", tmp_path_factory.mktemp("env") / ".env")
    monkeypatch.setenv("SHELL", "/bin/sh")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def queue_dir(temp_dir):
    path = temp_dir / "queue"
    path.mkdir()
    return path


@pytest.fixture
def storage(queue_dir):
    return TaskStorage(queue_dir)


@pytest.fixture
def executions(queue_dir):
    return ExecutionManager(queue_dir)


@pytest.fixture
def make_script(temp_dir):
    """Write a small Python program and return its path."""
    counter = {"n": 0}

    def _make(body: str) -> Path:
        counter["n"] += 1
        path = temp_dir / f"agent_{counter['n']}.py"
        path.write_text(textwrap.dedent(body))
        return path

    return _make


def python_spec(script: Path, name: str = "codex", timeout: float = 10.0, stdin: bool = True) -> RunnerSpec:
    """Runner spec that runs a Python script with the current interpreter."""
    return RunnerSpec(
        name=name,
        executable=sys.executable,
        timeout=timeout,
        prompt_via_stdin=stdin,
        args_builder=lambda prompt, workdir: [str(script)] if stdin else [str(script), prompt],
    )


class FakeResolver:
    """In-memory worktree resolver that creates plain directories."""

    def __init__(self, root: Path, fail: Optional[str] = None):
        self.repo_root = root / "repo"
        self.repo_root.mkdir(parents=True, exist_ok=True)
        self.base_dir = root / "worktrees"
        self.fail = fail
        self.worktrees: List[Worktree] = []
        self.created: List[str] = []

    def list_worktrees(self) -> List[Worktree]:
        return list(self.worktrees)

    def create_worktree(self, branch: str, base_branch: Optional[str] = None) -> Path:
        if self.fail:
            raise WorktreeError(self.fail)
        path = self.base_dir / sanitize_for_filesystem(branch)
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees.append(Worktree(path=str(path), branch=branch))
        self.created.append(branch)
        return path

    def factory(self, repository: Optional[str]):
        return self


class FakeProcessRunner(ProcessRunner):
    """Test double that records invocations instead of spawning agents."""

    def __init__(self, exit_codes: Optional[Dict[str, int]] = None, delay: float = 0.05):
        super().__init__()
        self.exit_codes = exit_codes or {}
        self.delay = delay
        self.invocations: List[str] = []
        self.argvs: List[List[str]] = []
        self.active = 0
        self.max_active = 0

    async def run(self, argv, cwd, *, prompt_stdin=None, timeout, log, execution_id, task_id):  # type: ignore[override]
        self.invocations.append(task_id)
        self.argvs.append(list(argv))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            ExecutionLogWriter(log, execution_id, task_id).write_line("stdout", f'{{"type": "started", "task": "{task_id}"}}')
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return self.exit_codes.get(task_id, 0)


@pytest.fixture
def fake_resolver(temp_dir):
    return FakeResolver(temp_dir)


@pytest.fixture
def fake_runner():
    return FakeProcessRunner()


@pytest.fixture
def worker_config(queue_dir):
    return WorkerConfig(
        queue_dir=queue_dir,
        parallel=1,
        poll_interval=0.05,
        runners={"codex": python_spec(Path("unused.py")), "claude": python_spec(Path("unused.py"), name="claude")},
        verify_timeout=10.0,
        auto_cleanup=False,
        watch=False,
    )


@pytest.fixture
def make_worker(storage, executions, fake_resolver, fake_runner):
    """Build a QueueWorker wired to the fakes (overridable per call)."""

    def _make(config: WorkerConfig, **overrides) -> QueueWorker:
        kwargs = dict(
            storage=storage,
            executions=executions,
            lease=InMemoryWorkerLease(),
            process_runner=fake_runner,
            resolver_factory=fake_resolver.factory,
            install_signal_handlers=False,
        )
        kwargs.update(overrides)
        return QueueWorker(config, **kwargs)

    return _make


@pytest.fixture
def sample_task():
    return Task(
        id="abc123",
        runner="codex",
        name="Fix flaky test",
        worktree="fix/flaky-test",
        priority=60,
        prompt="Make tests/test_io.py deterministic",
        status=TaskStatus.PENDING,
    )


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def git_env(monkeypatch):
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Agent Queue Tests")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "tests@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture
def repo(temp_dir, git_env):
    """A repository with one commit on main."""
    root = temp_dir / "project"
    root.mkdir()
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=root, check=True)
    (root / "README.md").write_text("hello\n")
    subprocess.run(["git", "add", "README.md"], cwd=root, check=True)
    subprocess.run(["git", "commit", "-q", "-m", "init"], cwd=root, check=True)
    return root
