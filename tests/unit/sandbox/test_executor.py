"""Unit tests for the sandbox executor using small Python child processes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
import sys
import time
from pathlib import Path

import psutil
import pytest

from godev_sandbox.domain.errors import InternalExecutionError
from godev_sandbox.domain.models import ResourceLimits
from godev_sandbox.sandbox.executor import SandboxExecutor
from godev_sandbox.sandbox.network_policy import NetworkPolicy
from godev_sandbox.utils.concurrency import CancellationToken

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups required")


def _limits(**overrides: object) -> ResourceLimits:
    values: dict[str, object] = {
        "cpu_seconds": 0,
        "memory_mb": 0,
        "timeout_seconds": 10.0,
        "max_output_bytes": 64 * 1024,
    }
    values.update(overrides)
    return ResourceLimits(**values)  # type: ignore[arg-type]


def _executor(**policy_kwargs: object) -> SandboxExecutor:
    policy_kwargs.setdefault("use_namespace", False)
    policy = NetworkPolicy(**policy_kwargs)  # type: ignore[arg-type]
    return SandboxExecutor(policy, kill_grace_seconds=0.2)


def _py(source: str) -> tuple[str, ...]:
    return (sys.executable, "-c", source)


def _gone(pid: int, *, within: float = 3.0) -> bool:
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


async def test_captures_output_and_exit_code(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py("import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"),
        cwd=tmp_path,
        limits=_limits(),
    )

    assert outcome.exit_code == 3
    assert outcome.stdout == b"out\n"
    assert outcome.stderr == b"err\n"
    assert not outcome.timed_out
    assert not outcome.resource_limit_exceeded
    assert outcome.duration_seconds > 0


async def test_runs_in_requested_directory(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py("import os; print(os.getcwd())"),
        cwd=tmp_path,
        limits=_limits(),
    )
    assert Path(outcome.stdout.decode().strip()).resolve() == tmp_path.resolve()


async def test_environment_is_scrubbed_and_policy_applied(tmp_path: Path) -> None:
    host_env = {"PATH": os.environ.get("PATH", "/usr/bin"), "AWS_SECRET_ACCESS_KEY": "leak"}
    outcome = await _executor(host_env=host_env).execute(
        _py("import json, os; print(json.dumps(dict(os.environ)))"),
        cwd=tmp_path,
        limits=_limits(cpu_seconds=0),
        env={"GOFLAGS": "-mod=readonly"},
    )

    child_env = json.loads(outcome.stdout)
    assert "AWS_SECRET_ACCESS_KEY" not in child_env
    assert child_env["GOPROXY"] == "off"
    assert child_env["GOSUMDB"] == "off"
    assert child_env["GOTOOLCHAIN"] == "local"
    assert child_env["GOFLAGS"] == "-mod=readonly"
    assert int(child_env["GOMAXPROCS"]) >= 1


async def test_output_is_truncated_at_limit_without_blocking(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py("import sys; sys.stdout.write('x' * 500000); sys.stdout.flush()"),
        cwd=tmp_path,
        limits=_limits(max_output_bytes=100),
    )

    assert outcome.exit_code == 0
    assert outcome.stdout == b"x" * 100
    assert outcome.stdout_truncated
    assert not outcome.stderr_truncated


async def test_stderr_is_capped_independently_of_stdout(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py(
            "import sys\n"
            "print('ok', flush=True)\n"
            "sys.stderr.write('e' * 300000)\n"
            "sys.stderr.flush()\n"
        ),
        cwd=tmp_path,
        limits=_limits(max_output_bytes=256),
    )

    assert outcome.exit_code == 0
    assert outcome.stderr_truncated
    assert outcome.stderr == b"e" * 256
    assert outcome.stdout == b"ok\n"
    assert not outcome.stdout_truncated


async def test_pipe_held_by_escaped_process_is_not_reported_as_truncation(
    tmp_path: Path,
) -> None:
    script = (
        "import subprocess, sys\n"
        "child = subprocess.Popen(\n"
        "    [sys.executable, '-c', 'import time; time.sleep(30)'],\n"
        "    start_new_session=True,\n"
        ")\n"
        "print(child.pid, flush=True)\n"
    )
    outcome = await _executor().execute(_py(script), cwd=tmp_path, limits=_limits())
    escaped = int(outcome.stdout.decode().split()[0])
    try:
        assert outcome.exit_code == 0
        assert not outcome.stdout_truncated
        assert not outcome.stderr_truncated
    finally:
        with contextlib.suppress(psutil.NoSuchProcess):
            psutil.Process(escaped).kill()


async def test_timeout_kills_whole_process_tree(tmp_path: Path) -> None:
    script = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(60)\n"
    )
    started = time.monotonic()
    outcome = await _executor().execute(
        _py(script),
        cwd=tmp_path,
        limits=_limits(timeout_seconds=1.0),
    )

    assert outcome.timed_out
    assert outcome.exit_code is None
    assert time.monotonic() - started < 10
    grandchild = int(outcome.stdout.decode().split()[0])
    assert _gone(grandchild)


async def test_cancellation_kills_process_and_propagates(tmp_path: Path) -> None:
    token = CancellationToken()
    marker = tmp_path / "pid.txt"
    script = (
        "import os, pathlib, time\n"
        f"pathlib.Path({str(marker)!r}).write_text(str(os.getpid()))\n"
        "time.sleep(60)\n"
    )

    async def cancel_soon() -> None:
        while not marker.exists() or not marker.read_text():
            await asyncio.sleep(0.02)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await _executor().execute(
            _py(script), cwd=tmp_path, limits=_limits(), cancel_token=token
        )
    await canceller

    assert _gone(int(marker.read_text()))


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="RLIMIT_CPU semantics")
async def test_cpu_ceiling_reports_resource_limit(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py("while True:\n    pass\n"),
        cwd=tmp_path,
        limits=_limits(cpu_seconds=1, timeout_seconds=20.0),
    )

    assert not outcome.timed_out
    assert "cpu_seconds" in outcome.limits_enforced
    assert outcome.resource_limit_exceeded


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="RLIMIT_AS semantics")
async def test_memory_ceiling_reports_resource_limit(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py("block = bytearray(1024 * 1024 * 1024)\nprint(len(block))\n"),
        cwd=tmp_path,
        limits=_limits(memory_mb=256),
    )

    if "memory_mb" not in outcome.limits_enforced:
        pytest.skip("host hard limit is below the requested memory ceiling")
    assert outcome.exit_code not in (0, None)
    assert not outcome.timed_out
    assert outcome.resource_limit_exceeded


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="RLIMIT_CPU semantics")
async def test_self_inflicted_sigkill_is_not_a_cpu_limit(tmp_path: Path) -> None:
    outcome = await _executor().execute(
        _py("import os, signal\nos.kill(os.getpid(), signal.SIGKILL)\n"),
        cwd=tmp_path,
        limits=_limits(cpu_seconds=30),
    )

    assert outcome.exit_code == -signal.SIGKILL
    assert not outcome.resource_limit_exceeded


async def test_spawn_failure_is_internal_error(tmp_path: Path) -> None:
    with pytest.raises(InternalExecutionError, match="failed to start"):
        await _executor().execute(
            (str(tmp_path / "no-such-binary"),),
            cwd=tmp_path,
            limits=_limits(),
        )


async def test_missing_working_directory_is_internal_error(tmp_path: Path) -> None:
    with pytest.raises(InternalExecutionError, match="working directory"):
        await _executor().execute(_py("pass"), cwd=tmp_path / "gone", limits=_limits())


@pytest.mark.parametrize("command", ["go build", (), ("",)])
async def test_rejects_malformed_commands(tmp_path: Path, command: object) -> None:
    with pytest.raises(ValueError, match="command"):
        await _executor().execute(command, cwd=tmp_path, limits=_limits())  # type: ignore[arg-type]


async def test_concurrent_executions_do_not_mix_output(tmp_path: Path) -> None:
    executor = _executor()
    outcomes = await asyncio.gather(
        *(
            executor.execute(_py(f"print('job-{index}' * 1000)"), cwd=tmp_path, limits=_limits())
            for index in range(6)
        )
    )
    for index, outcome in enumerate(outcomes):
        assert outcome.stdout.decode().strip() == f"job-{index}" * 1000


def test_kill_grace_must_be_non_negative() -> None:
    with pytest.raises(ValueError, match="kill_grace_seconds"):
        SandboxExecutor(kill_grace_seconds=-1)
