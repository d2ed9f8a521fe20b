"""
Git worktree helpers used by the worker.

git is always invoked as an external command; nothing here implements
version control itself.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence


logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a git command fails or git is not available."""


class WorktreeError(RuntimeError):
    """Raised when a worktree cannot be located or created."""


@dataclass
class Worktree:
    path: str
    branch: str = ""
    head: str = ""


def find_repo_root(start: Path) -> Optional[Path]:
    """Walk up from start to the first directory containing .git."""
    current = Path(start).expanduser().resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


class Git:
    """Thin wrapper around the git command line for one repository."""

    def __init__(self, repo_root: Path):
        self.repo_root = Path(repo_root)

    @classmethod
    def from_dir(cls, path: Path) -> "Git":
        root = find_repo_root(Path(path))
        if root is None:
            raise GitError(f"not a git repository: {path}")
        return cls(root)

    @classmethod
    def from_cwd(cls) -> "Git":
        return cls.from_dir(Path.cwd())

    def run(self, args: Sequence[str], cwd: Optional[Path] = None) -> str:
        """
        Run git and return its stdout.

        Raises:
            GitError: If git is missing or exits non-zero (message carries stderr)
        """
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(cwd or self.repo_root),
                capture_output=True,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            raise GitError("git executable not found") from e
        except OSError as e:
            raise GitError(f"failed to run git: {e}") from e

        if result.returncode != 0:
            raise GitError(f"git {' '.join(args)}: {result.stderr.strip()}")
        return result.stdout

    def branch_exists(self, branch: str) -> bool:
        try:
            self.run(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"])
        except GitError:
            return False
        return True


def parse_worktree_porcelain(output: str) -> List[Worktree]:
    """Parse `git worktree list --porcelain`; detached worktrees get branch ''."""
    entries: List[Worktree] = []
    current: Optional[Worktree] = None
    for line in output.splitlines():
        line = line.rstrip()
        if line.startswith("worktree "):
            if current is not None:
                entries.append(current)
            current = Worktree(path=line[len("worktree "):])
        elif current is None:
            continue
        elif line.startswith("branch "):
            ref = line[len("branch "):].strip()
            current.branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):].strip()
    if current is not None:
        entries.append(current)
    return entries


_UNSAFE_CHARS = re.compile(r'[/\\\x00-\x1f\x7f:*?"<>|]')


def sanitize_for_filesystem(name: str) -> str:
    """Map a branch name to one path component ("feature/x" -> "feature-x")."""
    out = _UNSAFE_CHARS.sub("-", name)
    out = re.sub(r"-{2,}", "-", out)
    return out.strip("-")


class WorktreeResolver(Protocol):
    """What the worker needs from the worktree collaborator."""

    repo_root: Path

    def list_worktrees(self) -> List[Worktree]:
        ...

    def create_worktree(self, branch: str, base_branch: Optional[str] = None) -> Path:
        ...


class GitWorktreeResolver:
    """Resolves worktrees of one repository with the git CLI."""

    def __init__(self, git: Git, base_dir: Path):
        self.git = git
        self.base_dir = Path(base_dir).expanduser()

    @property
    def repo_root(self) -> Path:
        return self.git.repo_root

    def list_worktrees(self) -> List[Worktree]:
        return parse_worktree_porcelain(self.git.run(["worktree", "list", "--porcelain"]))

    def worktree_path(self, branch: str) -> Path:
        name = sanitize_for_filesystem(branch)
        if not name:
            raise WorktreeError(f"cannot derive a directory name from branch '{branch}'")
        return self.base_dir / self.repo_root.name / name

    def create_worktree(self, branch: str, base_branch: Optional[str] = None) -> Path:
        path = self.worktree_path(branch)
        if path.exists():
            raise WorktreeError(f"worktree path already exists: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)

        if self.git.branch_exists(branch):
            self.git.run(["worktree", "add", str(path), branch])
        elif base_branch:
            self.git.run(["worktree", "add", "-b", branch, str(path), base_branch])
        else:
            self.git.run(["worktree", "add", "-b", branch, str(path)])
        logger.info(f"Created worktree {path} for branch {branch}")
        return path


ResolverFactory = Callable[[Optional[str]], WorktreeResolver]


def git_resolver_factory(base_dir: Path) -> ResolverFactory:
    """
    Build resolvers for a task's repository.

    A task without a repository resolves against the current directory.
    """
    def factory(repository: Optional[str]) -> WorktreeResolver:
        git = Git.from_dir(Path(repository)) if repository else Git.from_cwd()
        return GitWorktreeResolver(git, base_dir)
    return factory


def ensure_worktree(resolver: WorktreeResolver, branch: str, base_branch: Optional[str] = None) -> Path:
    """
    Return the directory of the worktree checked out on branch, creating it if needed.

    Raises:
        WorktreeError: If creation succeeded but the worktree cannot be found
        GitError: If a git command fails
    """
    for wt in resolver.list_worktrees():
        if wt.branch == branch:
            return Path(wt.path)

    created = resolver.create_worktree(branch, base_branch)

    for wt in resolver.list_worktrees():
        if wt.branch == branch:
            return Path(wt.path)
    if Path(created).is_dir():
        return Path(created)
    raise WorktreeError(f"failed to resolve worktree path after creation: {branch}")


def auto_commit(worktree_dir: Path, message: str) -> bool:
    """
    Stage and commit everything in a worktree if it is dirty.

    Returns:
        True if a commit was made, False if there was nothing to commit

    Raises:
        GitError: If any git command fails
    """
    git = Git(worktree_dir)
    if not git.run(["status", "--porcelain"]).strip():
        return False
    git.run(["add", "-A"])
    git.run(["commit", "-m", message])
    return True
