# Copyright (c) Syntropy Systems
"""Process runner with timeouts, cancellation and orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path
    from threading import Event

POLL_INTERVAL = 0.05


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan compilers and test binaries when fpbisect crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


@dataclass
class ProcessResult:
    """Captured outcome of one external process."""

    argv: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    def describe_failure(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration:.1f}s"
        if self.cancelled:
            return "cancelled"
        return f"exit code {self.exit_code}"


class ProcessRunner:
    """Runs one command with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Captures stdout/stderr to <name>.out / <name>.err in log_dir
    - Enforces a timeout and honours a cancellation event
    - Provides graceful and forceful termination
    """

    argv: list[str]
    workdir: Path
    stdout_path: Path
    stderr_path: Path
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _stdout_file: IO[str] | None
    _stderr_file: IO[str] | None

    def __init__(
        self,
        argv: list[str],
        workdir: Path,
        log_dir: Path,
        name: str = "process",
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a process runner.

        Args:
            argv: Command as list of argv tokens (no shell)
            workdir: Working directory to run the command in
            log_dir: Directory for captured output
            name: Stem of the captured output files
            env: Additional environment variables

        """
        self.argv = argv
        self.workdir = workdir
        self.stdout_path = log_dir / f"{name}.out"
        self.stderr_path = log_dir / f"{name}.err"

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._stdout_file = None
        self._stderr_file = None

    def start(self) -> None:
        """Start the process."""
        self.stdout_path.parent.mkdir(parents=True, exist_ok=True)

        self._stdout_file = self.stdout_path.open("w")
        self._stderr_file = self.stderr_path.open("w")

        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.argv,
                stdout=self._stdout_file,
                stderr=self._stderr_file,
                env=self.env,
                cwd=str(self.workdir),
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError:
            self._cleanup()
            raise

    def poll(self) -> int | None:
        """Check if process has finished.

        Returns exit code if finished, None if still running.
        """
        if self._process is None:
            return self._exit_code

        code = self._process.poll()
        if code is not None:
            self._exit_code = code
            self._cleanup()

        return code

    def wait(
        self,
        timeout: float | None = None,
        cancel_event: Event | None = None,
        grace_period: float = 10.0,
    ) -> tuple[int, bool, bool]:
        """Wait for the process, killing it on timeout or cancellation.

        Returns (exit_code, timed_out, cancelled).
        """
        if self._process is None:
            return self._exit_code or 0, False, False

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            code = self.poll()
            if code is not None:
                return code, False, False
            if cancel_event is not None and cancel_event.is_set():
                return self.kill(grace_period), False, True
            if deadline is not None and time.monotonic() >= deadline:
                return self.kill(grace_period), True, False
            time.sleep(POLL_INTERVAL)

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the process.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Args:
            grace_period: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        # Already finished?
        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        # Get the process group ID (same as session ID with start_new_session)
        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            # Process already gone
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        # Send SIGTERM to process group
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        # Wait for grace period
        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        # Still alive - SIGKILL
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        # Wait for process to die
        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def _cleanup(self) -> None:
        """Cleanup resources."""
        for handle in (self._stdout_file, self._stderr_file):
            if handle:
                with contextlib.suppress(Exception):
                    handle.close()
        self._stdout_file = None
        self._stderr_file = None

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished."""
        return self._exit_code

    @property
    def is_running(self) -> bool:
        """Check if the process is still running."""
        if self._process is None:
            return False
        return self._process.poll() is None


def run_process(
    argv: list[str],
    workdir: Path,
    log_dir: Path,
    name: str = "process",
    *,
    timeout: float | None = None,
    cancel_event: Event | None = None,
    grace_period: float = 10.0,
    env: dict[str, str] | None = None,
) -> ProcessResult:
    """Run argv to completion and return its captured output.

    A command that cannot be started is reported like a failed command
    (exit code 127) so callers only deal with one outcome type.
    """
    runner = ProcessRunner(argv, workdir, log_dir, name=name, env=env)
    started = time.monotonic()
    try:
        runner.start()
    except OSError as e:
        runner.stderr_path.write_text(f"{e}\n")
        return ProcessResult(
            argv=argv,
            exit_code=127,
            stdout="",
            stderr=str(e),
            duration=time.monotonic() - started,
        )

    exit_code, timed_out, cancelled = runner.wait(
        timeout=timeout, cancel_event=cancel_event, grace_period=grace_period
    )
    return ProcessResult(
        argv=argv,
        exit_code=exit_code,
        stdout=runner.stdout_path.read_text(errors="replace"),
        stderr=runner.stderr_path.read_text(errors="replace"),
        duration=time.monotonic() - started,
        timed_out=timed_out,
        cancelled=cancelled,
    )


class LocalExecutor:
    """Runs test executables, optionally behind a launcher such as mpirun."""

    def __init__(
        self,
        launcher: list[str] | None = None,
        grace_period: float = 10.0,
        cancel_event: Event | None = None,
    ) -> None:
        self.launcher = list(launcher or [])
        self.grace_period = grace_period
        self.cancel_event = cancel_event

    def execute(
        self,
        executable: Path,
        args: list[str],
        workdir: Path,
        timeout: float | None = None,
    ) -> ProcessResult:
        argv = [*self.launcher, str(executable), *args]
        return run_process(
            argv,
            workdir,
            workdir,
            name="run",
            timeout=timeout,
            cancel_event=self.cancel_event,
            grace_period=self.grace_period,
        )
