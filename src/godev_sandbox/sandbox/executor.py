"""Bounded asynchronous execution of one toolchain process and its descendants."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING

import psutil
import structlog

from godev_sandbox.constants import DEFAULT_KILL_GRACE_SECONDS
from godev_sandbox.domain.errors import InternalExecutionError
from godev_sandbox.domain.models import ExecutionOutcome
from godev_sandbox.sandbox.limits import (
    exceeded_resource_limit,
    gomaxprocs_for,
    plan_child_limits,
)
from godev_sandbox.sandbox.network_policy import NetworkPolicy, NetworkPolicyMode
from godev_sandbox.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from godev_sandbox.domain.models import ResourceLimits
    from godev_sandbox.utils.concurrency import CancellationToken

_READ_CHUNK_BYTES = 64 * 1024
# Upper bound on waiting for pipes to close after the process group is gone.
_DRAIN_GRACE_SECONDS = 2.0
_CPU_SAMPLE_SECONDS = 0.25
# Share of the CPU ceiling a process must have been seen using before a SIGKILL is
# blamed on RLIMIT_CPU. Samples lag the kill, more so for multi-threaded children.
_CPU_EXHAUSTED_FRACTION = 0.8


class SandboxExecutor:
    """
    Run one argv in a fresh session under time, output and rlimit ceilings.

    The child is the leader of its own process group, so on timeout or cancellation
    the whole tree is signalled: SIGTERM to the group, a short grace, then SIGKILL to
    the group and to every surviving descendant ``psutil`` can still see. The child
    is always reaped before ``execute`` returns or re-raises.
    """

    def __init__(
        self,
        network_policy: NetworkPolicy | None = None,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if kill_grace_seconds < 0:
            raise ValueError("kill_grace_seconds must be >= 0")
        self._network_policy = network_policy or NetworkPolicy(mode=NetworkPolicyMode.DENY)
        self._kill_grace_seconds = float(kill_grace_seconds)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def network_policy(self) -> NetworkPolicy:
        return self._network_policy

    async def execute(
        self,
        command: Sequence[str],
        *,
        cwd: Path | str,
        limits: ResourceLimits,
        env: Mapping[str, str] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionOutcome:
        argv = _normalize_command(command)
        workdir = Path(cwd)
        if not workdir.is_dir():
            raise InternalExecutionError(f"working directory does not exist: {workdir}")

        child_limits = plan_child_limits(limits)
        run_env = self._network_policy.build_environment(
            {"GOMAXPROCS": gomaxprocs_for(limits), **dict(env or {})}
        )
        # The first call may probe for network namespaces with a blocking subprocess.
        launch_argv = await asyncio.to_thread(self._network_policy.wrap_command, argv)

        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *launch_argv,
                cwd=str(workdir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=run_env,
                start_new_session=True,
                preexec_fn=child_limits.preexec(),
            )
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            self._logger.error("sandbox_spawn_failed", command=list(argv), error=str(exc))
            raise InternalExecutionError(f"failed to start {argv[0]!r}: {exc}") from exc

        self._logger.debug(
            "sandbox_process_started",
            pid=process.pid,
            command=list(launch_argv),
            cwd=str(workdir),
            limits_enforced=list(child_limits.enforced),
        )

        stdout_capture = _StreamCapture(limits.max_output_bytes)
        stderr_capture = _StreamCapture(limits.max_output_bytes)
        stdout_task = asyncio.create_task(_drain(process.stdout, stdout_capture))
        stderr_task = asyncio.create_task(_drain(process.stderr, stderr_capture))
        cpu_watch = _CpuWatch(process.pid)
        watch_task = (
            asyncio.create_task(cpu_watch.run()) if child_limits.cpu_seconds is not None else None
        )

        timed_out = False
        try:
            await run_with_timeout(process.wait(), limits.timeout_seconds, cancel_token)
        except TimeoutError:
            timed_out = True
            await self._terminate_tree(process)
        except BaseException:
            await self._terminate_tree(process)
            for task in (stdout_task, stderr_task):
                task.cancel()
            await asyncio.gather(stdout_task, stderr_task, return_exceptions=True)
            self._logger.info("sandbox_process_cancelled", pid=process.pid)
            raise
        else:
            # Stragglers left in the group by a leader that exited normally.
            _signal_group(process.pid, signal.SIGKILL)
        finally:
            if watch_task is not None:
                watch_task.cancel()
        if watch_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await watch_task

        stdout, stdout_truncated = await _collect(stdout_task, stdout_capture)
        stderr, stderr_truncated = await _collect(stderr_task, stderr_capture)
        duration = time.perf_counter() - started
        for stream, capture in (("stdout", stdout_capture), ("stderr", stderr_capture)):
            if capture.abandoned:
                self._logger.warning(
                    "sandbox_pipe_drain_abandoned",
                    pid=process.pid,
                    stream=stream,
                    captured_bytes=len(capture.data),
                )

        exit_code = None if timed_out else process.returncode
        cpu_exhausted = child_limits.cpu_seconds is not None and (
            cpu_watch.peak_seconds >= child_limits.cpu_seconds * _CPU_EXHAUSTED_FRACTION
        )
        resource_limit_exceeded = not timed_out and exceeded_resource_limit(
            exit_code, stderr, child_limits.enforced, cpu_exhausted=cpu_exhausted
        )
        outcome = ExecutionOutcome(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
            timed_out=timed_out,
            resource_limit_exceeded=resource_limit_exceeded,
            stdout_truncated=stdout_truncated,
            stderr_truncated=stderr_truncated,
            limits_enforced=child_limits.enforced,
        )
        self._logger.info(
            "sandbox_process_finished",
            pid=process.pid,
            exit_code=exit_code,
            duration_seconds=round(duration, 3),
            timed_out=timed_out,
            resource_limit_exceeded=resource_limit_exceeded,
            stdout_truncated=stdout_truncated,
            stderr_truncated=stderr_truncated,
        )
        return outcome

    async def _terminate_tree(self, process: asyncio.subprocess.Process) -> None:
        descendants = _descendants(process.pid)
        _signal_group(process.pid, signal.SIGTERM)
        with contextlib.suppress(ProcessLookupError):
            process.terminate()

        if self._kill_grace_seconds > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    asyncio.shield(process.wait()), timeout=self._kill_grace_seconds
                )

        descendants.extend(_descendants(process.pid))
        _signal_group(process.pid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        for child in descendants:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.kill()

        await asyncio.shield(process.wait())
        self._logger.debug(
            "sandbox_process_tree_killed",
            pid=process.pid,
            descendants=len(descendants),
        )


class _StreamCapture:
    """Bounded capture of one pipe; bytes past ``limit`` are read and dropped."""

    __slots__ = ("_buffer", "_limit", "abandoned", "truncated")

    def __init__(self, limit: int) -> None:
        self._buffer = bytearray()
        self._limit = limit
        self.truncated = False
        # Set when the pipe was still open after the drain grace and reading stopped.
        self.abandoned = False

    @property
    def data(self) -> bytes:
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> None:
        room = self._limit - len(self._buffer)
        if room > 0:
            self._buffer.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True


async def _drain(stream: asyncio.StreamReader | None, capture: _StreamCapture) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        capture.feed(chunk)


async def _collect(task: asyncio.Task[None], capture: _StreamCapture) -> tuple[bytes, bool]:
    # A descendant that escaped the group can hold the pipe open; stop waiting for it.
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=_DRAIN_GRACE_SECONDS)
    except TimeoutError:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        capture.abandoned = True
    return capture.data, capture.truncated


class _CpuWatch:
    """Highest CPU time any single process of a running tree has been seen using."""

    __slots__ = ("_pid", "peak_seconds")

    def __init__(self, pid: int) -> None:
        self._pid = pid
        self.peak_seconds = 0.0

    async def run(self) -> None:
        while True:
            self.sample()
            await asyncio.sleep(_CPU_SAMPLE_SECONDS)

    def sample(self) -> None:
        # RLIMIT_CPU applies to each process on its own, so track the per-process peak.
        try:
            root = psutil.Process(self._pid)
            tree = [root, *root.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return
        for proc in tree:
            try:
                times = proc.cpu_times()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            self.peak_seconds = max(self.peak_seconds, times.user + times.system)


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return []


def _signal_group(pid: int, sig: signal.Signals) -> None:
    if not hasattr(os, "killpg"):
        return
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, sig)


def _normalize_command(command: Sequence[str]) -> tuple[str, ...]:
    if isinstance(command, (str, bytes)) or not isinstance(command, (list, tuple)):
        raise ValueError("command must be a sequence of strings")
    if not command or not all(isinstance(item, str) for item in command):
        raise ValueError("command must be a non-empty sequence of strings")
    if not command[0].strip():
        raise ValueError("command must name an executable")
    return tuple(command)


__all__ = ["SandboxExecutor"]
