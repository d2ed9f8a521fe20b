"""
Process Runner: supervise one external agent process per execution.

stdout and stderr are drained concurrently, line by line, into the
execution's JSONL log while the process exit races a wall-clock timeout.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO

from agent_queue.models import LogEntry, parse_payload


logger = logging.getLogger(__name__)

# Agents emit whole JSON documents per line; keep the reader limit generous
STREAM_LIMIT = 16 * 1024 * 1024


class RunnerError(RuntimeError):
    """Base class for process runner errors."""


class RunnerSpawnError(RunnerError):
    """Raised when the executable cannot be started."""


class RunnerTimeoutError(RunnerError):
    """Raised after a process was killed for exceeding its timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"runner timed out after {format_seconds(timeout)}")


def format_seconds(seconds: float) -> str:
    if seconds >= 1 and float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{seconds:.3g}s"


@dataclass
class RunnerSpec:
    """How to invoke one kind of agent."""

    name: str
    executable: str
    timeout: float
    prompt_via_stdin: bool = False
    args_builder: Callable[[str, Path], List[str]] = field(default=lambda prompt, workdir: [], repr=False)

    def build_args(self, prompt: str, workdir: Path) -> List[str]:
        """Full argv for this runner."""
        return [self.executable, *self.args_builder(prompt, Path(workdir))]


def _codex_args(prompt: str, workdir: Path) -> List[str]:
    return [
        "exec",
        "--dangerously-bypass-approvals-and-sandbox",
        "--color", "never",
        "--json",
        "-C", str(workdir),
        "-",
    ]


def _claude_args(prompt: str, workdir: Path) -> List[str]:
    return [
        "--dangerously-skip-permissions",
        "--output-format", "stream-json",
        "--verbose",
        "-p", prompt,
    ]


def codex_spec(executable: str = "codex", timeout: float = 1800.0) -> RunnerSpec:
    """codex reads the prompt from stdin ("-")."""
    return RunnerSpec(
        name="codex",
        executable=executable,
        timeout=timeout,
        prompt_via_stdin=True,
        args_builder=_codex_args,
    )


def claude_spec(executable: str = "claude", timeout: float = 1800.0) -> RunnerSpec:
    """claude takes the prompt as the -p argument."""
    return RunnerSpec(
        name="claude",
        executable=executable,
        timeout=timeout,
        prompt_via_stdin=False,
        args_builder=_claude_args,
    )


class ExecutionLogWriter:
    """Appends LogEntry lines for one execution to an open handle."""

    def __init__(self, handle: TextIO, execution_id: str, task_id: str):
        self.handle = handle
        self.execution_id = execution_id
        self.task_id = task_id
        self.lines_written = 0

    def write_line(self, stream: str, line: str) -> None:
        if not line.strip():
            return
        entry = LogEntry(
            execution_id=self.execution_id,
            task_id=self.task_id,
            stream=stream,
            payload=parse_payload(line),
        )
        self.handle.write(entry.to_json_line())
        # Flush per line so `logs --follow` sees output as it happens
        self.handle.flush()
        self.lines_written += 1

    def flush(self) -> None:
        self.handle.flush()


class ProcessRunner:
    """Spawns agent and shell processes and captures their output."""

    def __init__(self, env: Optional[dict] = None):
        self.env = env

    async def run(
        self,
        argv: Sequence[str],
        cwd: Path,
        *,
        prompt_stdin: Optional[str] = None,
        timeout: float,
        log: TextIO,
        execution_id: str,
        task_id: str,
    ) -> int:
        """
        Run a process to completion or timeout.

        Args:
            argv: Executable and arguments
            cwd: Working directory
            prompt_stdin: Text written (plus a newline) to stdin, then closed;
                None gives the process an empty stdin
            timeout: Wall-clock limit in seconds
            log: Handle opened for append
            execution_id: Stamped on every log entry
            task_id: Stamped on every log entry

        Returns:
            Process exit code (negative signal number if killed by a signal)

        Raises:
            RunnerSpawnError: If the process could not be started
            RunnerTimeoutError: If the timeout elapsed (process is killed)
        """
        writer = ExecutionLogWriter(log, execution_id, task_id)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE if prompt_stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise RunnerSpawnError(f"failed to spawn {argv[0]}: {e}") from e

        logger.debug(f"[{task_id}] Spawned pid {process.pid}: {argv[0]}")

        drains = [
            asyncio.create_task(self._drain(process.stdout, "stdout", writer)),
            asyncio.create_task(self._drain(process.stderr, "stderr", writer)),
        ]
        # The feed shares the deadline: a child that never reads can fill the pipe
        feeder = None
        if prompt_stdin is not None:
            feeder = asyncio.create_task(self._feed_stdin(process, prompt_stdin))

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{task_id}] Process {process.pid} exceeded {format_seconds(timeout)}, killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            pending = drains + ([feeder] if feeder is not None else [])
            for task in pending:
                task.cancel()
            await process.wait()
            await asyncio.gather(*pending, return_exceptions=True)
            writer.flush()
            raise RunnerTimeoutError(timeout)

        if feeder is not None:
            if not feeder.done():
                feeder.cancel()
            await asyncio.gather(feeder, return_exceptions=True)
        await asyncio.gather(*drains)
        writer.flush()
        return process.returncode

    async def run_shell(
        self,
        command: str,
        cwd: Path,
        *,
        timeout: float,
        log: TextIO,
        execution_id: str,
        task_id: str,
    ) -> int:
        """Run one command through the operator's shell ($SHELL -lc)."""
        shell = os.environ.get("SHELL") or "/bin/sh"
        return await self.run(
            [shell, "-lc", command],
            cwd,
            timeout=timeout,
            log=log,
            execution_id=execution_id,
            task_id=task_id,
        )

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, text: str) -> None:
        # A process that exits without reading its input is not an error
        try:
            process.stdin.write((text + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            try:
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, name: str, writer: ExecutionLogWriter) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT; the reader has discarded it
                writer.write_line(name, f"[line exceeded {STREAM_LIMIT} bytes and was dropped]")
                continue
            if not raw:
                break
            writer.write_line(name, raw.decode("utf-8", errors="replace").rstrip("\r\n"))
