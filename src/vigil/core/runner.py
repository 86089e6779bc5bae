"""
Bounded process execution for Vigil.

Every external tool runs through CommandRunner. A call spawns exactly one
process (argv only, never a shell) in its own process group, drains its
pipes incrementally, and enforces a wall-clock timeout and a stdout size
cap. Whatever happens, the process group is signalled and the child is
waited on before ``run`` returns or raises.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

import structlog

if TYPE_CHECKING:
    from vigil.config.settings import RunnerConfig

logger = structlog.get_logger(__name__)


class CommandError(Exception):
    """Base class for process execution failures."""

    def __init__(self, message: str, command: Sequence[str], pid: int | None = None) -> None:
        super().__init__(message)
        self.command = list(command)
        self.pid = pid

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)


class SpawnFailure(CommandError):
    """The process could not be started."""

    pass


class CommandTimeout(CommandError):
    """The process ran past its wall-clock limit and was killed."""

    def __init__(self, command: Sequence[str], timeout: float, pid: int | None = None) -> None:
        super().__init__(f"Command timed out after {timeout:g}s: {shlex.join(command)}", command, pid)
        self.timeout = timeout


class OutputLimitExceeded(CommandError):
    """The process wrote more stdout than allowed and was killed."""

    def __init__(
        self,
        command: Sequence[str],
        limit: int,
        captured_bytes: int,
        pid: int | None = None,
    ) -> None:
        super().__init__(
            f"Output exceeded {limit} bytes: {shlex.join(command)}",
            command,
            pid,
        )
        self.limit = limit
        self.captured_bytes = captured_bytes


@dataclass
class CommandResult:
    """Captured output of a finished process."""

    command: list[str]
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float
    stderr_truncated: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# Upper bound on SIGTERM grace; the wall-clock limit is hard.
MAX_KILL_GRACE = 0.25


class CommandRunner:
    """
    Spawns external commands with hard resource limits.

    Args:
        default_timeout: Seconds allowed when ``run`` gets no timeout.
        max_output_bytes: Default stdout cap.
        chunk_size: Pipe read size; captured stdout never exceeds the cap
            by more than one chunk.
        kill_grace: Seconds between SIGTERM and SIGKILL, capped at
            MAX_KILL_GRACE so a killed run ends close to its limit.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        max_output_bytes: int = 1024 * 1024,
        chunk_size: int = 4096,
        kill_grace: float = 0.1,
    ) -> None:
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes
        self.chunk_size = chunk_size
        self.kill_grace = min(max(kill_grace, 0.0), MAX_KILL_GRACE)

    @classmethod
    def from_config(cls, config: RunnerConfig) -> CommandRunner:
        return cls(
            default_timeout=config.default_timeout_seconds,
            max_output_bytes=config.max_output_bytes,
            chunk_size=config.chunk_size,
            kill_grace=config.kill_grace_seconds,
        )

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> CommandResult:
        """
        Run one command to completion.

        Args:
            command: Executable name or path.
            args: Argument vector, passed to the process without a shell.
            timeout: Wall-clock limit in seconds.
            max_output_bytes: Stdout cap in bytes.

        Returns:
            CommandResult with decoded output and the exit code. A non-zero
            exit code is returned, not raised.

        Raises:
            SpawnFailure: The executable could not be started.
            CommandTimeout: The limit expired; the process group was killed.
            OutputLimitExceeded: Stdout passed the cap; the process group was killed.
        """
        argv = [command, *args]
        limit = self.max_output_bytes if max_output_bytes is None else max_output_bytes
        wall_clock = self.default_timeout if timeout is None else timeout

        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("command_spawn_failed", command=shlex.join(argv), error=str(e))
            raise SpawnFailure(f"Failed to start {command!r}: {e}", argv) from e

        logger.debug("command_started", command=shlex.join(argv), pid=process.pid, timeout=wall_clock)

        stdout = bytearray()
        stderr = bytearray()
        finished = False
        try:
            try:
                stderr_truncated = await asyncio.wait_for(
                    self._communicate(process, argv, stdout, stderr, limit),
                    timeout=wall_clock,
                )
            except TimeoutError:
                logger.warning(
                    "command_timeout",
                    command=shlex.join(argv),
                    pid=process.pid,
                    timeout=wall_clock,
                )
                raise CommandTimeout(argv, wall_clock, pid=process.pid) from None
            finished = True
        finally:
            await self._reap(process, force=not finished)

        duration_ms = (time.monotonic() - started) * 1000
        exit_code = process.returncode if process.returncode is not None else -1

        logger.debug(
            "command_completed",
            command=shlex.join(argv),
            exit_code=exit_code,
            duration_ms=round(duration_ms, 1),
            stdout_bytes=len(stdout),
        )

        return CommandResult(
            command=argv,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
            duration_ms=duration_ms,
            stderr_truncated=stderr_truncated,
        )

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        argv: list[str],
        stdout: bytearray,
        stderr: bytearray,
        limit: int,
    ) -> bool:
        """Drain both pipes, then wait for exit. Returns whether stderr was truncated."""
        assert process.stdout is not None and process.stderr is not None

        stderr_task = asyncio.create_task(self._drain_stderr(process.stderr, stderr, limit))
        try:
            while True:
                chunk = await process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                stdout.extend(chunk)
                if len(stdout) > limit:
                    logger.warning(
                        "command_output_limit_exceeded",
                        command=shlex.join(argv),
                        pid=process.pid,
                        limit=limit,
                        captured=len(stdout),
                    )
                    raise OutputLimitExceeded(argv, limit, len(stdout), pid=process.pid)

            truncated = await stderr_task
            await process.wait()
            return truncated
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
                await asyncio.gather(stderr_task, return_exceptions=True)

    async def _drain_stderr(self, stream: asyncio.StreamReader, buffer: bytearray, limit: int) -> bool:
        truncated = False
        while True:
            chunk = await stream.read(self.chunk_size)
            if not chunk:
                return truncated
            room = limit - len(buffer)
            if room > 0:
                buffer.extend(chunk[:room])
            if len(chunk) > room:
                truncated = True

    async def _reap(self, process: asyncio.subprocess.Process, force: bool) -> None:
        """Make sure the process group is gone and the child is waited on."""
        if process.returncode is not None:
            if force:
                # Leader exited but descendants may still hold the pipes.
                self._signal_group(process, signal.SIGKILL)
            return

        try:
            self._signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            except TimeoutError:
                self._signal_group(process, signal.SIGKILL)
                await process.wait()
        except asyncio.CancelledError:
            self._signal_group(process, signal.SIGKILL)
            raise

        logger.debug("command_reaped", pid=process.pid, returncode=process.returncode)

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group already gone and its id reused; fall back to the child itself.
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
