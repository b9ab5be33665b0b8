# Copyright (c) Syntropy Systems
"""Tests for process execution."""

import threading
import time

from fpbisect.runner import LocalExecutor, ProcessRunner, run_process


class TestRunProcess:
    def test_captures_output(self, temp_dir):
        result = run_process(["sh", "-c", "echo hello; echo oops >&2"], temp_dir, temp_dir, "job")

        assert result.ok
        assert result.stdout == "hello\n"
        assert result.stderr == "oops\n"
        assert (temp_dir / "job.out").read_text() == "hello\n"
        assert (temp_dir / "job.err").read_text() == "oops\n"

    def test_exit_code(self, temp_dir):
        result = run_process(["sh", "-c", "exit 3"], temp_dir, temp_dir)

        assert not result.ok
        assert result.exit_code == 3
        assert result.describe_failure() == "exit code 3"

    def test_runs_in_workdir(self, temp_dir):
        work = temp_dir / "work"
        work.mkdir()

        result = run_process(["sh", "-c", "pwd"], work, temp_dir)

        assert result.stdout.strip() == str(work.resolve())

    def test_timeout_kills_process(self, temp_dir):
        start = time.monotonic()
        result = run_process(["sleep", "30"], temp_dir, temp_dir, timeout=0.5, grace_period=1.0)

        assert result.timed_out
        assert not result.ok
        assert "timed out" in result.describe_failure()
        assert time.monotonic() - start < 10

    def test_cancel_event(self, temp_dir):
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            result = run_process(
                ["sleep", "30"], temp_dir, temp_dir, cancel_event=cancel, grace_period=1.0
            )
        finally:
            timer.cancel()

        assert result.cancelled
        assert result.describe_failure() == "cancelled"

    def test_missing_command(self, temp_dir):
        result = run_process(["/nonexistent/fpbisect-tool"], temp_dir, temp_dir, "missing")

        assert result.exit_code == 127
        assert not result.ok
        assert (temp_dir / "missing.err").exists()


class TestProcessRunner:
    def test_kill_process_group(self, temp_dir):
        runner = ProcessRunner(["sh", "-c", "sleep 30 & sleep 30"], temp_dir, temp_dir)
        runner.start()
        assert runner.is_running

        runner.kill(grace_period=1.0)

        assert not runner.is_running
        assert runner.exit_code is not None


class TestLocalExecutor:
    def test_launcher_prefix(self, temp_dir):
        executor = LocalExecutor(launcher=["sh", "-c", 'echo "$@"', "launcher"])

        result = executor.execute(temp_dir / "fpbisect-test", ["Example", "double"], temp_dir)

        assert result.ok
        assert result.stdout.strip() == f"{temp_dir / 'fpbisect-test'} Example double"
        assert (temp_dir / "run.out").exists()
