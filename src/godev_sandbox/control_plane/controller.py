"""
godev-sandbox: execution controller.

File: src/godev_sandbox/control_plane/controller.py

Purpose
- Drive one request through resolve → materialize → execute → normalize → clean up
  and hand back a canonical ``ExecutionResult``.

Functional requirements
- Every ``SandboxError`` becomes a failure result; programming errors propagate.
- A FIFO semaphore bounds how many toolchain processes run at once.
- Ephemeral workspaces are released on every exit path, cancellation included.
- Filesystem work (path probes, project copies, deletion) runs on worker threads so
  one request's copy never stalls another request's deadline.
- Configuration is held per controller; nothing here is module-global.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Final

import structlog

from godev_sandbox.config.schema import SandboxConfig
from godev_sandbox.constants import GO_MOD_FILENAME, GO_WORK_FILENAME
from godev_sandbox.control_plane.normalizer import (
    decode_stream,
    failure_result,
    normalize,
    skipped_result,
)
from godev_sandbox.diagnostics.parser import (
    extract_coverage,
    parse_formatted_files,
    summarize_tests,
)
from godev_sandbox.domain.errors import SandboxError
from godev_sandbox.domain.ids import generate_execution_id
from godev_sandbox.domain.models import Operation, WorkspaceOrigin
from godev_sandbox.observability.logging import correlation_scope
from godev_sandbox.planning.resolver import (
    effective_limits,
    resolve_plan,
    validate_request_paths,
)
from godev_sandbox.planning.toolchain import MUTATING_MOD_COMMANDS, MUTATING_WORK_COMMANDS
from godev_sandbox.sandbox.executor import SandboxExecutor
from godev_sandbox.sandbox.network_policy import NetworkPolicy
from godev_sandbox.utils.concurrency import BoundedSemaphore, WorkerPool
from godev_sandbox.workspace.cleanup import CleanupScope
from godev_sandbox.workspace.workspace_manager import WorkspaceManager

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from godev_sandbox.domain.models import (
        ExecutionOutcome,
        ExecutionPlan,
        ExecutionRequest,
        ExecutionResult,
        JSONValue,
        Workspace,
    )
    from godev_sandbox.utils.concurrency import CancellationToken


class ExecutionState(StrEnum):
    """Lifecycle phases of one execution."""

    IDLE = "idle"
    RESOLVING = "resolving"
    MATERIALIZING = "materializing"
    EXECUTING = "executing"
    NORMALIZING = "normalizing"
    CLEANING_UP = "cleaning_up"
    DONE = "done"


_ALLOWED_TRANSITIONS: Final[dict[ExecutionState, frozenset[ExecutionState]]] = {
    ExecutionState.IDLE: frozenset({ExecutionState.RESOLVING}),
    # A plan that needs no process (vet disabled) goes straight to normalizing.
    ExecutionState.RESOLVING: frozenset(
        {
            ExecutionState.MATERIALIZING,
            ExecutionState.NORMALIZING,
            ExecutionState.CLEANING_UP,
        }
    ),
    ExecutionState.MATERIALIZING: frozenset(
        {ExecutionState.EXECUTING, ExecutionState.CLEANING_UP}
    ),
    ExecutionState.EXECUTING: frozenset(
        {ExecutionState.NORMALIZING, ExecutionState.CLEANING_UP}
    ),
    ExecutionState.NORMALIZING: frozenset({ExecutionState.CLEANING_UP}),
    ExecutionState.CLEANING_UP: frozenset({ExecutionState.DONE}),
    ExecutionState.DONE: frozenset(),
}


@dataclass(slots=True)
class ExecutionTrace:
    """Ordered record of the states one execution passed through."""

    execution_id: str
    state: ExecutionState = ExecutionState.IDLE
    history: list[tuple[ExecutionState, float]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.history.append((self.state, time.perf_counter()))

    def advance(self, target: ExecutionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal execution transition {self.state} -> {target}")
        self.state = target
        self.history.append((target, time.perf_counter()))

    @property
    def states(self) -> tuple[ExecutionState, ...]:
        return tuple(state for state, _ in self.history)


class ExecutionController:
    """Run sandboxed Go operations for a single configuration."""

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        executor: SandboxExecutor | None = None,
        workspace_manager: WorkspaceManager | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._config = config if config is not None else SandboxConfig.defaults()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._executor = executor if executor is not None else self._build_executor()
        self._workspace_manager = (
            workspace_manager
            if workspace_manager is not None
            else WorkspaceManager(
                self._config.temp_root,
                prefix=self._config.workspace_prefix,
            )
        )
        self._semaphore = BoundedSemaphore(self._config.max_concurrent)
        self._traces: dict[str, ExecutionTrace] = {}

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def workspace_manager(self) -> WorkspaceManager:
        return self._workspace_manager

    @property
    def slots(self) -> BoundedSemaphore:
        return self._semaphore

    @property
    def last_trace(self) -> ExecutionTrace | None:
        if not self._traces:
            return None
        return next(reversed(self._traces.values()))

    def trace(self, execution_id: str) -> ExecutionTrace | None:
        return self._traces.get(execution_id)

    async def execute(
        self,
        request: ExecutionRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run ``request`` end to end; errors in the pipeline become failure results."""

        execution_id = generate_execution_id()
        trace = ExecutionTrace(execution_id)
        self._remember(trace)
        with correlation_scope(execution_id=execution_id, operation=request.operation.value):
            result = await self._execute(request, trace, cancel_token)
        self._logger.info(
            "execution_finished",
            execution_id=execution_id,
            success=result.success,
            error_kind=result.error_kind.value if result.error_kind else None,
            states=[state.value for state in trace.states],
        )
        return result

    def execute_sync(self, request: ExecutionRequest) -> ExecutionResult:
        """Blocking wrapper for callers without an event loop."""

        return asyncio.run(self.execute(request))

    async def execute_many(self, requests: Iterable[ExecutionRequest]) -> list[ExecutionResult]:
        """Run ``requests`` concurrently and return their results in input order."""

        pool: WorkerPool[ExecutionResult] = WorkerPool(
            max_concurrency=self._config.max_concurrent
        )
        return await pool.run_ordered(self.execute(request) for request in requests)

    async def _execute(
        self,
        request: ExecutionRequest,
        trace: ExecutionTrace,
        cancel_token: CancellationToken | None,
    ) -> ExecutionResult:
        started = time.perf_counter()
        self._advance(trace, ExecutionState.RESOLVING)
        try:
            probe = await asyncio.to_thread(validate_request_paths, request)
            plan = resolve_plan(
                request,
                effective_limits(self._config.limits, request),
                toolchain=self._config.toolchain,
                probe=probe,
            )
        except SandboxError as exc:
            self._logger.warning("execution_rejected", error=str(exc), kind=exc.kind.value)
            return self._finish_failed(
                trace,
                failure_result(
                    exc,
                    operation=request.operation,
                    duration_seconds=time.perf_counter() - started,
                ),
            )

        with correlation_scope(strategy=plan.strategy.value, origin=plan.origin.value):
            if plan.skip_execution:
                self._advance(trace, ExecutionState.NORMALIZING)
                result = skipped_result(plan, "vet skipped: vetting disabled for this request")
                self._advance(trace, ExecutionState.CLEANING_UP)
                self._advance(trace, ExecutionState.DONE)
                return result
            return await self._run_plan(request, plan, trace, cancel_token, started)

    async def _run_plan(
        self,
        request: ExecutionRequest,
        plan: ExecutionPlan,
        trace: ExecutionTrace,
        cancel_token: CancellationToken | None,
        started: float,
    ) -> ExecutionResult:
        scope = CleanupScope(logger=self._logger)
        try:
            result = await self._materialize_and_run(
                request, plan, trace, scope, cancel_token, started
            )
        finally:
            await scope.aclose()

        self._advance(trace, ExecutionState.DONE)
        return result

    async def _materialize_and_run(
        self,
        request: ExecutionRequest,
        plan: ExecutionPlan,
        trace: ExecutionTrace,
        scope: CleanupScope,
        cancel_token: CancellationToken | None,
        started: float,
    ) -> ExecutionResult:
        self._advance(trace, ExecutionState.MATERIALIZING)
        try:
            workspace = await self._materialize(plan, scope)
        except SandboxError as exc:
            self._logger.warning("materialization_failed", error=str(exc))
            return self._failed_during(trace, exc, plan, started)

        self._advance(trace, ExecutionState.EXECUTING)
        try:
            async with self._semaphore.permit():
                outcome = await self._executor.execute(
                    plan.command,
                    cwd=workspace.root,
                    limits=plan.limits,
                    env=dict(plan.env_overrides),
                    cancel_token=cancel_token,
                )
        except SandboxError as exc:
            self._logger.error("execution_failed_to_start", error=str(exc))
            return self._failed_during(trace, exc, plan, started)

        self._advance(trace, ExecutionState.NORMALIZING)
        artifacts = _collect_artifacts(request, plan, workspace, outcome)
        result = normalize(outcome, plan, artifacts=artifacts)
        self._advance(trace, ExecutionState.CLEANING_UP)
        return result

    async def _materialize(self, plan: ExecutionPlan, scope: CleanupScope) -> Workspace:
        copying = asyncio.ensure_future(
            asyncio.to_thread(self._workspace_manager.materialize, plan)
        )
        try:
            workspace = await asyncio.shield(copying)
        except asyncio.CancelledError:
            # The thread cannot be interrupted; wait for it so its root is released too.
            with contextlib.suppress(SandboxError):
                scope.register_workspace(
                    await copying, self._workspace_manager, retain=plan.retain_workspace
                )
            raise
        scope.register_workspace(workspace, self._workspace_manager, retain=plan.retain_workspace)
        return workspace

    def _failed_during(
        self,
        trace: ExecutionTrace,
        error: SandboxError,
        plan: ExecutionPlan,
        started: float,
    ) -> ExecutionResult:
        self._advance(trace, ExecutionState.CLEANING_UP)
        return failure_result(
            error,
            strategy=plan.strategy,
            origin=plan.origin,
            operation=plan.operation,
            duration_seconds=time.perf_counter() - started,
        )

    def _finish_failed(self, trace: ExecutionTrace, result: ExecutionResult) -> ExecutionResult:
        self._advance(trace, ExecutionState.CLEANING_UP)
        self._advance(trace, ExecutionState.DONE)
        return result

    def _advance(self, trace: ExecutionTrace, target: ExecutionState) -> None:
        previous = trace.state
        trace.advance(target)
        self._logger.debug(
            "execution_state_changed",
            execution_id=trace.execution_id,
            from_state=previous.value,
            to_state=target.value,
        )

    def _remember(self, trace: ExecutionTrace) -> None:
        self._traces[trace.execution_id] = trace
        # Keep the trace table bounded for long-lived controllers.
        while len(self._traces) > 256:
            self._traces.pop(next(iter(self._traces)))

    def _build_executor(self) -> SandboxExecutor:
        policy = NetworkPolicy(
            mode=self._config.network_policy,
            allowlist=self._config.module_proxies,
            use_namespace=self._config.use_network_namespace,
        )
        for proxy in policy.allowlist:
            policy.evaluate(proxy)
        return SandboxExecutor(policy, kill_grace_seconds=self._config.kill_grace_seconds)


def _collect_artifacts(
    request: ExecutionRequest,
    plan: ExecutionPlan,
    workspace: Workspace,
    outcome: ExecutionOutcome,
) -> dict[str, JSONValue]:
    artifacts: dict[str, JSONValue] = {}
    stdout = decode_stream(outcome.stdout)
    finished = outcome.exit_code == 0 and not outcome.timed_out

    if plan.operation is Operation.FMT:
        formatted = parse_formatted_files(stdout)
        artifacts["files_formatted"] = list(formatted)
        artifacts["code_changed"] = bool(formatted)
        if request.code is not None and plan.origin is WorkspaceOrigin.EPHEMERAL:
            formatted_code = _read_text(workspace.root / request.main_file)
            if formatted_code is not None:
                artifacts["formatted_code"] = formatted_code
    elif plan.operation is Operation.TEST:
        artifacts["tests"] = dict(summarize_tests(stdout).to_dict())
        if request.coverage:
            artifacts["coverage"] = extract_coverage(stdout)
    elif plan.operation is Operation.MOD and request.mod_command in MUTATING_MOD_COMMANDS:
        go_mod = _read_text(workspace.root / GO_MOD_FILENAME)
        if go_mod is not None:
            artifacts["go_mod"] = go_mod
    elif plan.operation is Operation.WORK and request.work_command in MUTATING_WORK_COMMANDS:
        go_work = _read_text(workspace.root / GO_WORK_FILENAME)
        if go_work is not None:
            artifacts["go_work"] = go_work
    elif plan.operation is Operation.BUILD and plan.build_output is not None and finished:
        artifacts.update(_build_output_artifacts(plan, workspace))

    if plan.retain_workspace and not workspace.caller_owned:
        artifacts["workspace_root"] = str(workspace.root)
    return artifacts


def _build_output_artifacts(plan: ExecutionPlan, workspace: Workspace) -> dict[str, JSONValue]:
    output = workspace.root / (plan.build_output or "")
    # An output inside a discarded workspace is gone once cleanup runs.
    survives = plan.retain_workspace or not _inside(output, workspace.root)
    return {
        "binary_built": output.is_file(),
        "output_path": str(output) if survives else None,
    }


def _inside(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


__all__ = ["ExecutionController", "ExecutionState", "ExecutionTrace"]
