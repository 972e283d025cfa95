"""Conversion of raw process outcomes and errors into canonical results."""

from __future__ import annotations

from typing import TYPE_CHECKING

from godev_sandbox.diagnostics.parser import parse_go_errors
from godev_sandbox.domain.errors import ErrorKind, SandboxError
from godev_sandbox.domain.models import ExecutionResult, Operation

if TYPE_CHECKING:
    from collections.abc import Mapping

    from godev_sandbox.domain.models import (
        ExecutionOutcome,
        ExecutionPlan,
        JSONValue,
        Strategy,
        WorkspaceOrigin,
    )

# Operations whose stderr carries compiler-style ``file:line:col`` diagnostics.
_DIAGNOSED_OPERATIONS = frozenset(
    {Operation.BUILD, Operation.RUN, Operation.TEST, Operation.VET}
)


def decode_stream(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def normalize(
    outcome: ExecutionOutcome,
    plan: ExecutionPlan,
    *,
    artifacts: Mapping[str, JSONValue] | None = None,
) -> ExecutionResult:
    """
    Build the canonical result for one finished process.

    ``success`` requires a zero exit code with neither a timeout nor a resource
    ceiling hit. Output text is decoded but otherwise passed through unchanged.
    """

    stdout = decode_stream(outcome.stdout)
    stderr = decode_stream(outcome.stderr)
    success = (
        outcome.exit_code == 0
        and not outcome.timed_out
        and not outcome.resource_limit_exceeded
    )

    error_kind: ErrorKind | None
    if outcome.timed_out:
        error_kind = ErrorKind.EXECUTION_TIMEOUT
        message = f"{plan.operation.value} timed out after {plan.limits.timeout_seconds:g}s"
    elif outcome.resource_limit_exceeded:
        error_kind = ErrorKind.RESOURCE_LIMIT_EXCEEDED
        enforced = ", ".join(outcome.limits_enforced) or "none"
        message = f"{plan.operation.value} exceeded a resource limit (enforced: {enforced})"
    elif not success:
        error_kind = ErrorKind.TOOLCHAIN_FAILURE
        message = f"{plan.operation.value} failed with exit code {outcome.exit_code}"
    else:
        error_kind = None
        message = f"{plan.operation.value} succeeded"

    diagnostics = ()
    if not success and plan.operation in _DIAGNOSED_OPERATIONS and stderr:
        diagnostics = parse_go_errors(stderr)

    merged_artifacts: dict[str, JSONValue] = {"limits_enforced": list(outcome.limits_enforced)}
    if artifacts:
        merged_artifacts.update(artifacts)

    return ExecutionResult(
        success=success,
        exit_code=outcome.exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=outcome.duration_seconds,
        strategy=plan.strategy,
        origin=plan.origin,
        operation=plan.operation,
        stdout_truncated=outcome.stdout_truncated,
        stderr_truncated=outcome.stderr_truncated,
        timed_out=outcome.timed_out,
        resource_limit_exceeded=outcome.resource_limit_exceeded,
        error_kind=error_kind,
        message=message,
        diagnostics=diagnostics,
        artifacts=merged_artifacts,
    )


def skipped_result(plan: ExecutionPlan, message: str) -> ExecutionResult:
    """Successful result for a plan that needed no process (``vet`` with vetting off)."""

    return ExecutionResult(
        success=True,
        exit_code=0,
        stdout="",
        stderr="",
        duration_seconds=0.0,
        strategy=plan.strategy,
        origin=plan.origin,
        operation=plan.operation,
        message=message,
        artifacts={"skipped": True},
    )


def failure_result(
    error: SandboxError,
    *,
    strategy: Strategy | None = None,
    origin: WorkspaceOrigin | None = None,
    operation: Operation | None = None,
    duration_seconds: float = 0.0,
) -> ExecutionResult:
    """Well-formed result for a request that never produced a process outcome."""

    return ExecutionResult(
        success=False,
        exit_code=None,
        stdout="",
        stderr="",
        duration_seconds=duration_seconds,
        strategy=strategy,
        origin=origin,
        operation=operation,
        error_kind=error.kind,
        message=str(error) or error.kind.value,
    )


__all__ = ["decode_stream", "failure_result", "normalize", "skipped_result"]
