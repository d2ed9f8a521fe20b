"""
Command-line interface for agent-queue.

Grouped command structure (all under `task`):
- add, list, show, reset, delete
- logs, logs-clean
- worker: start, stop, status
"""

import argparse
import asyncio
import csv
import json
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from agent_queue import __version__
from agent_queue.config import ConfigManager, expand_path, parse_duration
from agent_queue.execution import ExecutionManager, ExecutionNotFoundError, render_log_record
from agent_queue.importer import TaskFileError, load_task_file
from agent_queue.lease import WorkerAlreadyRunningError, load_worker_lock
from agent_queue.models import ExecutionStatus, Task, TaskStatus
from agent_queue.storage import TaskNotFoundError, TaskStorage
from agent_queue.worker import (
    WorkerConfig,
    configure_logging,
    request_stop,
    run_worker,
    worker_status,
)


STATUS_ICONS = {
    TaskStatus.PENDING: "⏳",
    TaskStatus.WAITING: "⏸️ ",
    TaskStatus.RUNNING: "🔄",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.FAILED: "❌",
}

FOLLOW_POLL_INTERVAL = 0.5  # seconds


def _load_config(args) -> ConfigManager:
    return ConfigManager(args.config)


def _queue_dir(args, config_manager: ConfigManager) -> Path:
    if getattr(args, "queue_dir", None):
        return expand_path(args.queue_dir)
    return config_manager.queue_dir


def _stores(args):
    config_manager = _load_config(args)
    queue_dir = _queue_dir(args, config_manager)
    return config_manager, TaskStorage(queue_dir), ExecutionManager(queue_dir)


def _error(message) -> int:
    print(f"❌ Error: {message}", file=sys.stderr)
    return 1


def _short_time(value: Optional[str]) -> str:
    if not value:
        return "-"
    return value.replace("T", " ").replace("+00:00", "Z")


# =============================================================================
# TASK COMMANDS
# =============================================================================

def cmd_task_add(args):
    """Enqueue a task (or a batch from a YAML file)."""
    try:
        _, storage, _ = _stores(args)

        if args.file:
            tasks = load_task_file(Path(args.file), args.runner, storage)
            print(f"✅ Imported {len(tasks)} task(s) from {args.file}")
            for task in tasks:
                print(f"   {task.id}  p={task.priority:<3} {task.worktree}  {task.display_name()}")
            return 0

        if not args.name:
            return _error("task name is required (or use --file)")
        if not args.worktree:
            return _error("worktree must be specified (-w/--worktree)")

        repository = str(expand_path(args.repository).resolve()) if args.repository else None
        task = storage.enqueue(
            runner=args.runner,
            worktree=args.worktree,
            name=args.name,
            task_id=args.id,
            repository=repository,
            base_branch=args.base,
            priority=args.priority,
            depends_on=args.depends_on or [],
            prompt=args.prompt or "",
            files=args.files or [],
            verify=args.verify or [],
            auto_commit=args.auto_commit,
        )
    except (TaskFileError, ValueError, OSError) as e:
        return _error(e)

    print(f"✅ Task added: {task.id}")
    print(f"   Name: {task.display_name()}")
    print(f"   Runner: {task.runner}  Worktree: {task.worktree}  Priority: {task.priority}")
    if task.depends_on:
        print(f"   Depends on: {', '.join(task.depends_on)}")
    return 0


def _filter_tasks(tasks: List[Task], status: Optional[str], priority_min: Optional[int]) -> List[Task]:
    if status:
        wanted = {s.strip().lower() for s in status.split(",") if s.strip()}
        tasks = [t for t in tasks if t.status.value in wanted]
    if priority_min is not None:
        tasks = [t for t in tasks if t.priority >= priority_min]
    return tasks


def cmd_task_list(args):
    """List tasks, highest priority first."""
    try:
        _, storage, _ = _stores(args)
        tasks = _filter_tasks(storage.list(), args.filter, args.priority_min)
    except (ValueError, OSError) as e:
        return _error(e)

    if args.json:
        print(json.dumps([t.model_dump(mode="json") for t in tasks], indent=2))
        return 0

    if args.csv:
        writer = csv.writer(sys.stdout)
        writer.writerow(["id", "status", "priority", "runner", "worktree", "name", "depends_on", "last_error"])
        for t in tasks:
            writer.writerow([
                t.id, t.status.value, t.priority, t.runner, t.worktree, t.name,
                " ".join(t.depends_on), t.last_error or "",
            ])
        return 0

    if not tasks:
        print("📭 No tasks")
        return 0

    print(f"\n📋 Tasks ({len(tasks)}):")
    for t in tasks:
        icon = STATUS_ICONS.get(t.status, "•")
        print(f"  {icon} {t.id:<8} {t.status.value:<9} p={t.priority:<3} {t.runner:<6} {t.worktree:<24} {t.display_name()}")
        if args.verbose:
            if t.depends_on:
                print(f"      Depends on: {', '.join(t.depends_on)}")
            if t.session_id:
                print(f"      Last execution: {t.session_id}")
            if t.last_error:
                print(f"      Error: {t.last_error}")
    return 0


def cmd_task_show(args):
    """Show one task by id or unique pattern."""
    try:
        _, storage, executions = _stores(args)
        task = storage.find(args.pattern)
    except (ValueError, OSError, TaskNotFoundError) as e:
        return _error(e)

    print("=" * 60)
    print(f"{STATUS_ICONS.get(task.status, '•')} Task {task.id}: {task.display_name()}")
    print("=" * 60)
    print(f"Status:      {task.status.value}")
    print(f"Runner:      {task.runner}")
    print(f"Priority:    {task.priority}")
    print(f"Worktree:    {task.worktree}")
    if task.base_branch:
        print(f"Base branch: {task.base_branch}")
    if task.repository:
        print(f"Repository:  {task.repository}")
    if task.depends_on:
        print(f"Depends on:  {', '.join(task.depends_on)}")
    if task.files:
        print(f"Files:       {', '.join(task.files)}")
    if task.verify:
        print("Verify:")
        for command in task.verify:
            print(f"   $ {command}")
    print(f"Auto-commit: {'yes' if task.auto_commit else 'no'}")
    print(f"Created:     {_short_time(task.created_at)}")
    print(f"Started:     {_short_time(task.started_at)}")
    print(f"Completed:   {_short_time(task.completed_at)}")
    if task.last_error:
        print(f"Error:       {task.last_error}")
    if task.prompt:
        print(f"\nPrompt:\n{task.prompt}")

    if task.session_id:
        print(f"\n🧾 Last execution: {task.session_id}")
        try:
            meta = executions.load_metadata(task.session_id)
        except (ExecutionNotFoundError, ValueError):
            print("   (execution record not found)")
        else:
            print(f"   Status: {meta.status.value}  Exit code: {meta.exit_code if meta.exit_code is not None else '-'}")
            if meta.working_directory:
                print(f"   Directory: {meta.working_directory}")
        print(f"\n💡 Use 'agent-queue task logs {task.session_id}' to view output")
    return 0


def cmd_task_reset(args):
    """Put a task back to pending."""
    try:
        _, storage, _ = _stores(args)
        task = storage.reset(args.task_id, force=args.force)
    except (ValueError, OSError, TaskNotFoundError) as e:
        return _error(e)
    print(f"🔄 Task {task.id} reset to pending")
    return 0


def cmd_task_delete(args):
    """Delete a task record."""
    try:
        _, storage, _ = _stores(args)
        task = storage.load(args.task_id)
        if task.status == TaskStatus.RUNNING and not args.force:
            return _error(f"task {task.id} is running; use --force to delete it anyway")
        dependents = [t.id for t in storage.list() if task.id in t.depends_on and t.status.schedulable]
        storage.delete(task.id)
    except (ValueError, OSError, TaskNotFoundError) as e:
        return _error(e)

    print(f"🗑️  Task {task.id} deleted")
    if dependents:
        print(f"⚠️  Pending tasks still depend on it: {', '.join(dependents)}")
    return 0


# =============================================================================
# LOG COMMANDS
# =============================================================================

def _print_execution_list(executions: ExecutionManager, args) -> int:
    metas = executions.filter_executions(
        executions.list_metadata(),
        status=args.status or "",
        date=args.date or "",
        contains=args.contains or "",
    )
    if args.limit:
        metas = metas[:args.limit]

    if args.json:
        print(json.dumps([m.model_dump(mode="json") for m in metas], indent=2))
        return 0

    if not metas:
        print("📭 No executions")
        return 0

    icons = {
        ExecutionStatus.RUNNING: "🔄",
        ExecutionStatus.COMPLETED: "✅",
        ExecutionStatus.FAILED: "❌",
        ExecutionStatus.ABORTED: "⚠️ ",
    }
    print(f"\n🧾 Executions ({len(metas)}):")
    for m in metas:
        print(f"  {icons.get(m.status, '•')} {m.execution_id}  {m.status.value:<9} {_short_time(m.start_time)}  task {m.task_id}  {m.task_name}")
        if m.error:
            print(f"      Error: {m.error}")
    return 0


def _print_record(record: dict, args) -> None:
    if args.json:
        print(json.dumps(record, ensure_ascii=False))
    elif args.plain and record.get("type") == "text" and "text" in record:
        print(record["text"])
    else:
        print(render_log_record(record))


def _follow_log(executions: ExecutionManager, execution_id: str, args) -> None:
    """Print new log lines until the execution leaves RUNNING."""
    path = executions.log_path(execution_id)
    position = path.stat().st_size if path.exists() else 0
    while True:
        if path.exists():
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                f.seek(position)
                for line in f:
                    if not line.endswith("\n"):
                        break
                    position += len(line.encode("utf-8"))
                    try:
                        record = json.loads(line)
                    except ValueError:
                        record = {"raw": line.rstrip("\n")}
                    _print_record(record if isinstance(record, dict) else {"raw": line.rstrip("\n")}, args)
        try:
            meta = executions.load_metadata(execution_id)
        except (ExecutionNotFoundError, ValueError):
            return
        if meta.status != ExecutionStatus.RUNNING:
            return
        time.sleep(FOLLOW_POLL_INTERVAL)


def cmd_task_logs(args):
    """List executions, or print one execution's log."""
    try:
        _, _, executions = _stores(args)

        if not args.execution_id:
            return _print_execution_list(executions, args)

        execution_id = args.execution_id
        if not executions.log_exists(execution_id):
            executions.load_metadata(execution_id)
            print(f"📭 No output captured for {execution_id}")
            return 0

        records = list(executions.iter_log_records(execution_id))
        if args.tail:
            records = records[-args.tail:]
        for record in records:
            _print_record(record, args)

        if args.follow:
            _follow_log(executions, execution_id, args)
    except KeyboardInterrupt:
        return 0
    except (ExecutionNotFoundError, ValueError, OSError) as e:
        return _error(e)
    return 0


def cmd_task_logs_clean(args):
    """Delete finished executions older than --older-than."""
    try:
        _, _, executions = _stores(args)
        age = parse_duration(args.older_than)
        cutoff = datetime.now(timezone.utc) - age
        old = executions.old_executions(cutoff)
        if not old:
            print(f"📭 No executions older than {args.older_than}")
            return 0

        if not args.yes:
            answer = input(f"Delete {len(old)} execution(s) older than {args.older_than}? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Aborted")
                return 1

        for meta in old:
            executions.delete_execution(meta.execution_id)
    except (ValueError, OSError) as e:
        return _error(e)

    print(f"🧹 Deleted {len(old)} execution(s)")
    return 0


# =============================================================================
# WORKER COMMANDS
# =============================================================================

def _spawn_daemon(args, queue_dir: Path) -> int:
    """Start a detached worker process that logs to <queue_dir>/worker.log."""
    command = [sys.executable, "-m", "agent_queue.cli"]
    if args.config:
        command += ["--config", str(args.config)]
    command += ["--queue-dir", str(queue_dir), "task", "worker", "start"]
    if args.parallel:
        command += ["--parallel", str(args.parallel)]
    if args.wait:
        command.append("--wait")

    queue_dir.mkdir(parents=True, exist_ok=True)
    log_file = queue_dir / "worker.log"
    with open(log_file, "a", encoding="utf-8") as out:
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    print(f"🚀 Worker started in background (pid {process.pid})")
    print(f"   Log: {log_file}")
    return 0


def cmd_worker_start(args):
    """Run the worker in the foreground, or detach it with --daemon."""
    try:
        config_manager = _load_config(args)
        queue_dir = _queue_dir(args, config_manager)

        if load_worker_lock(queue_dir) is not None:
            return _error(f"worker already running ({queue_dir / 'worker.lock'} exists)")

        if args.daemon:
            return _spawn_daemon(args, queue_dir)

        settings = config_manager.settings
        if not settings.enabled:
            return _error("task system is disabled in the configuration")

        config = WorkerConfig.from_settings(
            settings,
            worktree_base_dir=config_manager.worktree_base_dir,
            parallel=args.parallel,
            wait=args.wait,
        )
        config.queue_dir = queue_dir
    except (ValueError, OSError) as e:
        return _error(e)

    configure_logging()
    try:
        run_worker(config)
    except WorkerAlreadyRunningError as e:
        return _error(e)
    except OSError as e:
        return _error(e)
    return 0


def cmd_worker_stop(args):
    """Request a graceful stop and wait for the worker to exit."""
    try:
        config_manager = _load_config(args)
        queue_dir = _queue_dir(args, config_manager)
        timeout = parse_duration(args.timeout).total_seconds()

        if load_worker_lock(queue_dir) is None:
            print("ℹ️  No worker is running")
            return 0

        print(f"🛑 Stop requested, waiting up to {args.timeout}...")
        stopped = asyncio.run(request_stop(queue_dir, timeout))
    except (ValueError, OSError) as e:
        return _error(e)

    if not stopped:
        return _error(f"worker did not stop within {args.timeout}")
    print("✅ Worker stopped")
    return 0


def cmd_worker_status(args):
    """Show worker and queue status."""
    try:
        _, storage, executions = _stores(args)
        tasks = storage.list()
        report = worker_status(storage.queue_dir, tasks)
    except (ValueError, OSError) as e:
        return _error(e)

    if args.json:
        print(report.model_dump_json(indent=2))
        return 0

    print("=" * 60)
    print("👷 Worker Status")
    print("=" * 60)
    print(f"\nQueue directory: {storage.queue_dir}")
    if report.running:
        print(f"State: 🔄 RUNNING (pid {report.pid}, since {_short_time(report.started_at)})")
    else:
        print("State: 💤 NOT RUNNING")
    if report.stop_requested:
        print("Stop: 🛑 requested")

    print("\nTasks:")
    if not report.counts:
        print("   (none)")
    for status, count in report.counts.items():
        print(f"   {status:<10} {count}")

    if args.verbose:
        running = [t for t in tasks if t.status == TaskStatus.RUNNING]
        if running:
            print("\nRunning:")
            for t in running:
                print(f"   🔄 {t.id} {t.display_name()} (since {_short_time(t.started_at)}, execution {t.session_id})")
        active = [m for m in executions.list_metadata() if m.status == ExecutionStatus.RUNNING]
        if active:
            print(f"\nActive executions: {', '.join(m.execution_id for m in active)}")
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-queue",
        description="Queue and run coding-agent tasks in git worktrees",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Enqueue tasks
  agent-queue task add codex "Fix flaky test" -w fix/flaky-test --prompt "..."
  agent-queue task add claude "Docs pass" -w docs/pass -p 80 --depends-on a1b2c3
  agent-queue task add codex -f tasks.yaml

  # Inspect
  agent-queue task list --filter pending,running -v
  agent-queue task show flaky
  agent-queue task logs
  agent-queue task logs exec-1a2b3c --follow

  # Worker
  agent-queue task worker start --parallel 2
  agent-queue task worker stop --timeout 5m
  agent-queue task worker status
        """,
    )
    parser.add_argument("--version", action="version", version=f"agent-queue {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to configuration file")
    parser.add_argument("--queue-dir", default=None, help="Override the queue directory")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    task_parser = subparsers.add_parser("task", help="Manage queued tasks")
    task_sub = task_parser.add_subparsers(dest="task_command", help="Task commands")

    add_parser = task_sub.add_parser("add", help="Enqueue a task")
    add_parser.add_argument("runner", choices=["claude", "codex"], help="Agent to run")
    add_parser.add_argument("name", nargs="?", default="", help="Task name")
    add_parser.add_argument("-w", "--worktree", help="Target branch / worktree")
    add_parser.add_argument("--base", help="Base branch when the worktree must be created")
    add_parser.add_argument("-p", "--priority", type=int, default=50, help="Priority 1-100 (default 50)")
    add_parser.add_argument("--depends-on", action="append", metavar="ID", help="Task that must complete first")
    add_parser.add_argument("--prompt", help="Prompt for the agent (defaults to the name)")
    add_parser.add_argument("--files", action="append", metavar="PATH", help="File to focus on")
    add_parser.add_argument("--verify", action="append", metavar="CMD", help="Verification command")
    add_parser.add_argument("--auto-commit", action="store_true", help="Commit changes after success")
    add_parser.add_argument("--repository", help="Path to the source repository")
    add_parser.add_argument("--id", help="Explicit task id")
    add_parser.add_argument("-f", "--file", help="Import tasks from a YAML file")
    add_parser.set_defaults(func=cmd_task_add)

    list_parser = task_sub.add_parser("list", help="List tasks")
    list_parser.add_argument("--filter", help="Comma-separated statuses to show")
    list_parser.add_argument("--priority-min", type=int, help="Only tasks with at least this priority")
    fmt = list_parser.add_mutually_exclusive_group()
    fmt.add_argument("--json", action="store_true", help="JSON output")
    fmt.add_argument("--csv", action="store_true", help="CSV output")
    list_parser.add_argument("-v", "--verbose", action="store_true", help="Show dependencies and errors")
    list_parser.set_defaults(func=cmd_task_list)

    show_parser = task_sub.add_parser("show", help="Show a task")
    show_parser.add_argument("pattern", help="Task id or unique substring of id/name/worktree")
    show_parser.set_defaults(func=cmd_task_show)

    reset_parser = task_sub.add_parser("reset", help="Reset a task to pending")
    reset_parser.add_argument("task_id", help="Task ID")
    reset_parser.add_argument("--force", action="store_true", help="Reset even if running")
    reset_parser.set_defaults(func=cmd_task_reset)

    delete_parser = task_sub.add_parser("delete", help="Delete a task")
    delete_parser.add_argument("task_id", help="Task ID")
    delete_parser.add_argument("--force", action="store_true", help="Delete even if running")
    delete_parser.set_defaults(func=cmd_task_delete)

    logs_parser = task_sub.add_parser("logs", help="List executions or show one execution's log")
    logs_parser.add_argument("execution_id", nargs="?", help="Execution ID")
    logs_parser.add_argument("--status", help="Filter by execution status")
    logs_parser.add_argument("--date", help="Filter by start date (YYYY-MM-DD)")
    logs_parser.add_argument("--contains", help="Filter by text in metadata or log")
    logs_parser.add_argument("--limit", type=int, default=20, help="Maximum executions to list (0 = all)")
    logs_parser.add_argument("--json", action="store_true", help="Raw JSON output")
    logs_parser.add_argument("--plain", action="store_true", help="Print text lines without decoration")
    logs_parser.add_argument("--tail", type=int, help="Only the last N lines")
    logs_parser.add_argument("--follow", action="store_true", help="Keep printing while the execution runs")
    logs_parser.set_defaults(func=cmd_task_logs)

    clean_parser = task_sub.add_parser("logs-clean", help="Delete old execution logs")
    clean_parser.add_argument("--older-than", default="30d", help="Age threshold (default 30d)")
    clean_parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    clean_parser.set_defaults(func=cmd_task_logs_clean)

    worker_parser = task_sub.add_parser("worker", help="Manage the worker")
    worker_sub = worker_parser.add_subparsers(dest="worker_command", help="Worker commands")

    start_parser = worker_sub.add_parser("start", help="Start the worker")
    start_parser.add_argument("--parallel", type=int, help="Maximum concurrent tasks")
    start_parser.add_argument("--daemon", action="store_true", help="Run in the background")
    start_parser.add_argument("--wait", action="store_true", help="Keep running when the queue is empty")
    start_parser.set_defaults(func=cmd_worker_start)

    stop_parser = worker_sub.add_parser("stop", help="Stop the worker")
    stop_parser.add_argument("--timeout", default="5m", help="How long to wait (default 5m)")
    stop_parser.set_defaults(func=cmd_worker_stop)

    status_parser = worker_sub.add_parser("status", help="Show worker status")
    status_parser.add_argument("-v", "--verbose", action="store_true", help="Show running tasks")
    status_parser.add_argument("--json", action="store_true", help="JSON output")
    status_parser.set_defaults(func=cmd_worker_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
