"""
godev-sandbox: execution strategy resolver.

File: src/godev_sandbox/planning/resolver.py

Purpose
- Turn an ``ExecutionRequest`` into an immutable ``ExecutionPlan``: which strategy,
  which workspace origin, which files to write and which argv to run.

Functional requirements
- ``resolve_plan`` is pure; every filesystem probe happens in
  ``validate_request_paths`` before it.
- Only ``fmt`` may rewrite a caller-owned project. Any other operation that could
  write into the project (mutating ``mod`` and ``work`` subcommands included) runs
  against an ephemeral copy instead.
- Requests with neither code nor a project path are rejected.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

from godev_sandbox.constants import BUILD_OUTPUT_NAME, GO_MOD_FILENAME, GO_WORK_FILENAME
from godev_sandbox.domain.errors import InvalidRequestError
from godev_sandbox.domain.models import (
    ExecutionPlan,
    FileSpec,
    Operation,
    Strategy,
    WorkCommand,
    WorkspaceOrigin,
)
from godev_sandbox.planning.toolchain import (
    MUTATING_MOD_COMMANDS,
    MUTATING_WORK_COMMANDS,
    PLACEHOLDER_TEST_SOURCE,
    Toolchain,
    build_command,
    needs_module_descriptor,
)

if TYPE_CHECKING:
    from godev_sandbox.domain.models import ExecutionRequest, ResourceLimits

_PACKAGE_CLAUSE_RE = re.compile(r"^\s*package\s+([A-Za-z_][A-Za-z0-9_]*)", re.MULTILINE)

_READ_ONLY_GOFLAGS = "-mod=readonly"
_EPHEMERAL_GOFLAGS = "-mod=mod"
_MODULE_AWARE_OPERATIONS = frozenset(
    {Operation.BUILD, Operation.TEST, Operation.RUN, Operation.VET}
)


@dataclass(frozen=True, slots=True)
class ProjectProbe:
    """Filesystem facts gathered once before planning."""

    project_path: Path | None = None
    output_path: Path | None = None
    has_module_descriptor: bool = True
    has_workspace_descriptor: bool = True


def validate_request_paths(request: ExecutionRequest) -> ProjectProbe:
    """
    Check the caller's paths and return the facts the resolver needs.

    Relative paths resolve against the current directory. A build ``output_path``
    that would land inside the caller's project is refused.
    """

    project: Path | None = None
    has_module_descriptor = True
    has_workspace_descriptor = False
    if request.project_path is not None:
        candidate = Path(request.project_path).expanduser()
        try:
            project = candidate.resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise InvalidRequestError(
                f"project path does not exist or cannot be resolved: {request.project_path}"
            ) from exc
        if not project.is_dir():
            raise InvalidRequestError(f"project path is not a directory: {request.project_path}")
        if not os.access(project, os.R_OK | os.X_OK):
            raise InvalidRequestError(f"project path is not readable: {request.project_path}")
        has_module_descriptor = (project / GO_MOD_FILENAME).is_file()
        has_workspace_descriptor = (project / GO_WORK_FILENAME).is_file()

    output: Path | None = None
    if request.output_path is not None:
        output = Path(request.output_path).expanduser().resolve()
        if project is not None and (output == project or project in output.parents):
            raise InvalidRequestError(
                "output_path must not point inside the project directory: "
                f"{request.output_path}"
            )

    return ProjectProbe(
        project_path=project,
        output_path=output,
        has_module_descriptor=has_module_descriptor,
        has_workspace_descriptor=has_workspace_descriptor,
    )


def effective_limits(base: ResourceLimits, request: ExecutionRequest) -> ResourceLimits:
    """Apply a per-request timeout over the configured defaults."""

    if request.timeout_seconds is None:
        return base
    return replace(base, timeout_seconds=request.timeout_seconds)


def resolve_plan(
    request: ExecutionRequest,
    limits: ResourceLimits,
    *,
    toolchain: Toolchain | None = None,
    probe: ProjectProbe | None = None,
) -> ExecutionPlan:
    """Choose strategy, workspace origin, files and argv for ``request``."""

    tools = toolchain or Toolchain()
    facts = probe or _probe_without_io(request)
    has_overlay = request.code is not None or request.test_code is not None
    if request.operation is Operation.WORK:
        _check_work_request(request, facts)

    if request.project_path is None:
        if request.code is None:
            raise InvalidRequestError("a request needs code or project_path (or both)")
        return _plan_code_only(request, limits, tools, facts)
    if not has_overlay:
        return _plan_project_only(request, limits, tools, facts)
    return _plan_hybrid(request, limits, tools, facts)


def _plan_code_only(
    request: ExecutionRequest,
    limits: ResourceLimits,
    toolchain: Toolchain,
    probe: ProjectProbe,
) -> ExecutionPlan:
    build_output = _ephemeral_build_output(request, probe)
    return ExecutionPlan(
        strategy=Strategy.CODE_ONLY,
        origin=WorkspaceOrigin.EPHEMERAL,
        operation=request.operation,
        limits=limits,
        command=_command(request, toolchain, snippet=True, output_target=build_output),
        files=_overlay_files(request, synthesize_test=True),
        requires_module_descriptor=needs_module_descriptor(request),
        retain_workspace=request.retain_workspace,
        skip_execution=_vet_disabled(request),
        build_output=build_output,
        env_overrides=_goflags(request, WorkspaceOrigin.EPHEMERAL),
    )


def _plan_project_only(
    request: ExecutionRequest,
    limits: ResourceLimits,
    toolchain: Toolchain,
    probe: ProjectProbe,
) -> ExecutionPlan:
    project = probe.project_path
    if project is None:
        raise InvalidRequestError("project_path is required for project plans")

    if request.operation is Operation.FMT:
        return ExecutionPlan(
            strategy=Strategy.PROJECT_PATH_ONLY,
            origin=WorkspaceOrigin.EXISTING,
            operation=request.operation,
            limits=limits,
            command=_command(request, toolchain, snippet=False),
            existing_root=project,
            mutates_in_place=True,
        )

    if _needs_copy(request, probe):
        build_output = _ephemeral_build_output(request, probe)
        return ExecutionPlan(
            strategy=Strategy.PROJECT_PATH_ONLY,
            origin=WorkspaceOrigin.EPHEMERAL,
            operation=request.operation,
            limits=limits,
            command=_command(request, toolchain, snippet=False, output_target=build_output),
            source_project=project,
            requires_module_descriptor=needs_module_descriptor(request),
            retain_workspace=request.retain_workspace,
            skip_execution=_vet_disabled(request),
            build_output=build_output,
            env_overrides=_goflags(request, WorkspaceOrigin.EPHEMERAL),
        )

    build_output = str(probe.output_path) if probe.output_path is not None else None
    return ExecutionPlan(
        strategy=Strategy.PROJECT_PATH_ONLY,
        origin=WorkspaceOrigin.EXISTING,
        operation=request.operation,
        limits=limits,
        command=_command(request, toolchain, snippet=False, output_target=build_output),
        existing_root=project,
        skip_execution=_vet_disabled(request),
        build_output=build_output,
        env_overrides=_goflags(request, WorkspaceOrigin.EXISTING),
    )


def _plan_hybrid(
    request: ExecutionRequest,
    limits: ResourceLimits,
    toolchain: Toolchain,
    probe: ProjectProbe,
) -> ExecutionPlan:
    project = probe.project_path
    if project is None:
        raise InvalidRequestError("project_path is required for hybrid plans")
    build_output = _ephemeral_build_output(request, probe)
    snippet = request.operation is Operation.FMT and request.code is not None
    return ExecutionPlan(
        strategy=Strategy.HYBRID,
        origin=WorkspaceOrigin.EPHEMERAL,
        operation=request.operation,
        limits=limits,
        command=_command(request, toolchain, snippet=snippet, output_target=build_output),
        files=_overlay_files(request, synthesize_test=False),
        source_project=project,
        requires_module_descriptor=needs_module_descriptor(request),
        retain_workspace=request.retain_workspace,
        skip_execution=_vet_disabled(request),
        build_output=build_output,
        env_overrides=_goflags(request, WorkspaceOrigin.EPHEMERAL),
    )


def _needs_copy(request: ExecutionRequest, probe: ProjectProbe) -> bool:
    if request.operation is Operation.BUILD and probe.output_path is None:
        return True
    if request.operation is Operation.MOD and request.mod_command in MUTATING_MOD_COMMANDS:
        return True
    if request.operation is Operation.WORK and request.work_command in MUTATING_WORK_COMMANDS:
        return True
    return needs_module_descriptor(request) and not probe.has_module_descriptor


def _check_work_request(request: ExecutionRequest, probe: ProjectProbe) -> None:
    if request.project_path is None:
        raise InvalidRequestError("the work operation needs a project_path")
    if request.work_command is not WorkCommand.INIT and not probe.has_workspace_descriptor:
        raise InvalidRequestError(
            f"{GO_WORK_FILENAME} not found in the project; run the 'init' work command first"
        )


def _overlay_files(request: ExecutionRequest, *, synthesize_test: bool) -> tuple[FileSpec, ...]:
    files: list[FileSpec] = []
    if request.code is not None:
        files.append(FileSpec(path=request.main_file, content=request.code))
    if request.test_code is not None:
        files.append(FileSpec(path=request.test_file, content=request.test_code))
    elif synthesize_test and request.operation is Operation.TEST:
        files.append(
            FileSpec(
                path=request.test_file,
                content=_placeholder_test(request.code),
            )
        )
    return tuple(files)


def _placeholder_test(code: str | None) -> str:
    package = "main"
    if code is not None:
        match = _PACKAGE_CLAUSE_RE.search(code)
        if match is not None:
            package = match.group(1)
    return PLACEHOLDER_TEST_SOURCE.replace("package main", f"package {package}", 1)


def _ephemeral_build_output(request: ExecutionRequest, probe: ProjectProbe) -> str | None:
    if request.operation is not Operation.BUILD:
        return None
    if probe.output_path is not None:
        return str(probe.output_path)
    return BUILD_OUTPUT_NAME


def _command(
    request: ExecutionRequest,
    toolchain: Toolchain,
    *,
    snippet: bool,
    output_target: str | None = None,
) -> tuple[str, ...]:
    if _vet_disabled(request):
        return ()
    return build_command(request, toolchain, snippet=snippet, output_target=output_target)


def _vet_disabled(request: ExecutionRequest) -> bool:
    return request.operation is Operation.VET and not request.vet


def _goflags(request: ExecutionRequest, origin: WorkspaceOrigin) -> tuple[tuple[str, str], ...]:
    if request.operation not in _MODULE_AWARE_OPERATIONS:
        return ()
    flags = _READ_ONLY_GOFLAGS if origin is WorkspaceOrigin.EXISTING else _EPHEMERAL_GOFLAGS
    return (("GOFLAGS", flags),)


def _probe_without_io(request: ExecutionRequest) -> ProjectProbe:
    return ProjectProbe(
        project_path=Path(request.project_path) if request.project_path is not None else None,
        output_path=Path(request.output_path) if request.output_path is not None else None,
        has_module_descriptor=True,
        has_workspace_descriptor=True,
    )


__all__ = [
    "ProjectProbe",
    "effective_limits",
    "resolve_plan",
    "validate_request_paths",
]
