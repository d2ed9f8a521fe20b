"""Tests for the agent process runner."""

import asyncio
import sys
import time
from pathlib import Path

import pytest

from agent_queue.process_runner import (
    ProcessRunner,
    RunnerSpawnError,
    RunnerTimeoutError,
    claude_spec,
    codex_spec,
)


async def _run(executions, argv, cwd, **kwargs):
    with executions.open_log("exec-test") as log:
        code = await ProcessRunner().run(argv, cwd, log=log, execution_id="exec-test", task_id="t1", **kwargs)
    return code, list(executions.iter_log_records("exec-test"))


class TestProcessRunner:
    """Tests for ProcessRunner.run."""

    @pytest.mark.asyncio
    async def test_captures_json_text_and_stderr(self, executions, make_script, temp_dir):
        """Test captures json text and stderr."""
        script = make_script(
            """
            import sys
            print('{"type": "agent_message", "text": "hello"}')
            print("plain line")
            print("")
            print("oops", file=sys.stderr)
            """
        )
        code, records = await _run(executions, [sys.executable, str(script)], temp_dir, timeout=10)

        assert code == 0
        stdout = [r for r in records if r["stream"] == "stdout"]
        stderr = [r for r in records if r["stream"] == "stderr"]
        assert stdout[0]["type"] == "agent_message"
        assert stdout[0]["text"] == "hello"
        assert stdout[1] == {**stdout[1], "type": "text", "text": "plain line"}
        assert len(stdout) == 2
        assert stderr[0]["text"] == "oops"
        assert all(r["execution_id"] == "exec-test" and r["task_id"] == "t1" for r in records)

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self, executions, make_script, temp_dir):
        """Test invalid utf8 is replaced."""
        script = make_script(
            """
            import sys
            sys.stdout.buffer.write(b"bad \\xff byte\\n")
            """
        )
        code, records = await _run(executions, [sys.executable, str(script)], temp_dir, timeout=10)
        assert code == 0
        assert records[0]["text"] == "bad � byte"

    @pytest.mark.asyncio
    async def test_prompt_via_stdin(self, executions, make_script, temp_dir):
        """Test prompt via stdin."""
        script = make_script(
            """
            import sys
            data = sys.stdin.read()
            print("got:" + data.strip())
            """
        )
        code, records = await _run(
            executions, [sys.executable, str(script)], temp_dir, prompt_stdin="fix the bug", timeout=10
        )
        assert code == 0
        assert records[0]["text"] == "got:fix the bug"

    @pytest.mark.asyncio
    async def test_runs_in_working_directory(self, executions, make_script, temp_dir):
        """Test runs in working directory."""
        workdir = temp_dir / "wt"
        workdir.mkdir()
        script = make_script("import os\nprint(os.getcwd())\n")
        _, records = await _run(executions, [sys.executable, str(script)], workdir, timeout=10)
        assert Path(records[0]["text"]).resolve() == workdir.resolve()

    @pytest.mark.asyncio
    async def test_nonzero_exit_code(self, executions, make_script, temp_dir):
        """Test nonzero exit code."""
        script = make_script("import sys\nsys.exit(3)\n")
        code, _ = await _run(executions, [sys.executable, str(script)], temp_dir, timeout=10)
        assert code == 3

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, executions, make_script, temp_dir):
        """Test timeout kills process."""
        script = make_script(
            """
            import time
            print("starting", flush=True)
            time.sleep(30)
            """
        )
        started = time.monotonic()
        with pytest.raises(RunnerTimeoutError, match="timed out"):
            await _run(executions, [sys.executable, str(script)], temp_dir, timeout=0.5)
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_timeout_covers_unread_stdin(self, executions, make_script, temp_dir):
        """Test a large prompt to a child that never reads stdin still times out."""
        script = make_script("import time\ntime.sleep(60)\n")
        started = time.monotonic()
        with pytest.raises(RunnerTimeoutError):
            await asyncio.wait_for(
                _run(
                    executions,
                    [sys.executable, str(script)],
                    temp_dir,
                    prompt_stdin="x" * (4 * 1024 * 1024),
                    timeout=1.0,
                ),
                timeout=15,
            )
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_spawn_error(self, executions, temp_dir):
        """Test spawn error."""
        with pytest.raises(RunnerSpawnError, match="failed to spawn"):
            await _run(executions, [str(temp_dir / "no-such-agent")], temp_dir, timeout=5)

    @pytest.mark.asyncio
    async def test_run_shell(self, executions, temp_dir):
        """Test run shell."""
        with executions.open_log("exec-sh") as log:
            ok = await ProcessRunner().run_shell(
                "echo verified && exit 0", temp_dir, timeout=10, log=log, execution_id="exec-sh", task_id="t1"
            )
            bad = await ProcessRunner().run_shell(
                "exit 7", temp_dir, timeout=10, log=log, execution_id="exec-sh", task_id="t1"
            )
        assert ok == 0
        assert bad == 7
        assert list(executions.iter_log_records("exec-sh"))[0]["text"] == "verified"


class TestRunnerSpecs:
    """Tests for runner command lines."""

    def test_codex_args(self, temp_dir):
        """Test codex args."""
        spec = codex_spec("/opt/codex", timeout=60)
        argv = spec.build_args("prompt text", temp_dir)
        assert argv[0] == "/opt/codex"
        assert argv[1] == "exec"
        assert "--json" in argv
        assert argv[argv.index("-C") + 1] == str(temp_dir)
        assert argv[-1] == "-"
        assert "prompt text" not in argv
        assert spec.prompt_via_stdin

    def test_claude_args(self, temp_dir):
        """Test claude args."""
        spec = claude_spec()
        argv = spec.build_args("prompt text", temp_dir)
        assert argv[0] == "claude"
        assert argv[argv.index("-p") + 1] == "prompt text"
        assert argv[argv.index("--output-format") + 1] == "stream-json"
        assert not spec.prompt_via_stdin
