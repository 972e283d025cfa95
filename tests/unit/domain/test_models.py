"""Unit tests for request validation and canonical result serialization."""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from godev_sandbox.domain.errors import ErrorKind, InvalidRequestError, SandboxError
from godev_sandbox.domain.models import (
    Diagnostic,
    DiagnosticType,
    ExecutionPlan,
    ExecutionRequest,
    ExecutionResult,
    FileSpec,
    ModCommand,
    Operation,
    ResourceLimits,
    Strategy,
    Workspace,
    WorkCommand,
    WorkspaceOrigin,
    derive_test_filename,
)

LIMITS = ResourceLimits(cpu_seconds=10, memory_mb=256, timeout_seconds=5.0, max_output_bytes=4096)


def test_request_coerces_operation_and_treats_blank_text_as_absent() -> None:
    request = ExecutionRequest(
        operation="RUN",  # type: ignore[arg-type]
        code="   \n",
        project_path="  ",
        build_tags="",
    )

    assert request.operation is Operation.RUN
    assert request.code is None
    assert request.project_path is None
    assert request.build_tags is None
    assert not request.has_code and not request.has_project


def test_request_keeps_code_whitespace_verbatim() -> None:
    source = "package main\n\nfunc main() {}\n"
    request = ExecutionRequest(operation=Operation.BUILD, code=source)
    assert request.code == source


def test_request_rejects_unknown_operation() -> None:
    with pytest.raises(InvalidRequestError, match="unsupported operation"):
        ExecutionRequest(operation="deploy")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "main_file",
    ["main.txt", "main_test.go", "pkg/main.go.bak"],
)
def test_request_rejects_bad_main_file(main_file: str) -> None:
    with pytest.raises(InvalidRequestError, match="main_file"):
        ExecutionRequest(operation=Operation.BUILD, code="package main", main_file=main_file)


def test_request_leaves_main_file_containment_to_materialization() -> None:
    request = ExecutionRequest(operation=Operation.BUILD, code="package main", main_file="../x.go")
    assert request.main_file == "../x.go"


def test_request_normalizes_main_file_and_derives_test_file() -> None:
    request = ExecutionRequest(
        operation=Operation.TEST, code="package app", main_file="cmd\\app\\app.go"
    )
    assert request.main_file == "cmd/app/app.go"
    assert request.test_file == "cmd/app/app_test.go"


def test_request_mod_requires_command_and_accepts_strings() -> None:
    with pytest.raises(InvalidRequestError, match="mod_command is required"):
        ExecutionRequest(operation=Operation.MOD, project_path="/tmp")

    request = ExecutionRequest(
        operation=Operation.MOD,
        project_path="/tmp",
        mod_command="Tidy",  # type: ignore[arg-type]
    )
    assert request.mod_command is ModCommand.TIDY


@pytest.mark.parametrize("timeout", [0, -1.0, float("inf"), float("nan")])
def test_request_rejects_invalid_timeout(timeout: float) -> None:
    with pytest.raises(InvalidRequestError, match="timeout_seconds"):
        ExecutionRequest(operation=Operation.RUN, code="package main", timeout_seconds=timeout)


@pytest.mark.parametrize("timeout", ["soon", object(), [1]])
def test_request_rejects_non_numeric_timeout(timeout: object) -> None:
    with pytest.raises(InvalidRequestError, match="timeout_seconds must be a number"):
        ExecutionRequest(
            operation=Operation.RUN,
            code="package main",
            timeout_seconds=timeout,  # type: ignore[arg-type]
        )


def test_request_work_requires_command_and_modules_for_use() -> None:
    with pytest.raises(InvalidRequestError, match="work_command is required"):
        ExecutionRequest(operation=Operation.WORK, project_path="/tmp")
    with pytest.raises(InvalidRequestError, match="modules are required"):
        ExecutionRequest(
            operation=Operation.WORK,
            project_path="/tmp",
            work_command="use",  # type: ignore[arg-type]
        )

    request = ExecutionRequest(
        operation=Operation.WORK,
        project_path="/tmp",
        work_command="Use",  # type: ignore[arg-type]
        modules=[" ./api ", "./web"],  # type: ignore[arg-type]
    )
    assert request.work_command is WorkCommand.USE
    assert request.modules == ("./api", "./web")


@pytest.mark.parametrize("modules", ["./api", ["./api", ""], ["./api", 3]])
def test_request_rejects_malformed_modules(modules: object) -> None:
    with pytest.raises(InvalidRequestError, match="modules"):
        ExecutionRequest(
            operation=Operation.WORK,
            project_path="/tmp",
            work_command=WorkCommand.INIT,
            modules=modules,  # type: ignore[arg-type]
        )


def test_request_validates_run_args() -> None:
    request = ExecutionRequest(
        operation=Operation.RUN,
        code="package main",
        run_args=["a", "b"],  # type: ignore[arg-type]
    )
    assert request.run_args == ("a", "b")

    with pytest.raises(InvalidRequestError, match="sequence of strings"):
        ExecutionRequest(
            operation=Operation.RUN, code="x", run_args="a b"  # type: ignore[arg-type]
        )
    with pytest.raises(InvalidRequestError, match="only strings"):
        ExecutionRequest(operation=Operation.RUN, code="x", run_args=(1,))  # type: ignore[arg-type]
    with pytest.raises(InvalidRequestError, match="NUL"):
        ExecutionRequest(operation=Operation.RUN, code="x", run_args=("a\x00b",))


def test_invalid_request_error_is_a_value_error_with_kind() -> None:
    error = InvalidRequestError("bad")
    assert isinstance(error, ValueError)
    assert isinstance(error, SandboxError)
    assert error.kind is ErrorKind.INVALID_REQUEST


def test_resource_limits_validation() -> None:
    ResourceLimits(cpu_seconds=0, memory_mb=0, timeout_seconds=0.5, max_output_bytes=1)
    with pytest.raises(ValueError, match="cpu_seconds"):
        ResourceLimits(cpu_seconds=-1, memory_mb=0, timeout_seconds=1.0, max_output_bytes=1)
    with pytest.raises(ValueError, match="timeout_seconds"):
        ResourceLimits(cpu_seconds=1, memory_mb=0, timeout_seconds=0.0, max_output_bytes=1)
    with pytest.raises(ValueError, match="max_output_bytes"):
        ResourceLimits(cpu_seconds=1, memory_mb=0, timeout_seconds=1.0, max_output_bytes=0)


def test_plan_invariants_for_existing_origin(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="existing_root"):
        ExecutionPlan(
            strategy=Strategy.PROJECT_PATH_ONLY,
            origin=WorkspaceOrigin.EXISTING,
            operation=Operation.VET,
            limits=LIMITS,
            command=("go", "vet", "./..."),
        )
    with pytest.raises(ValueError, match="must not write files"):
        ExecutionPlan(
            strategy=Strategy.PROJECT_PATH_ONLY,
            origin=WorkspaceOrigin.EXISTING,
            operation=Operation.VET,
            limits=LIMITS,
            command=("go", "vet", "./..."),
            existing_root=tmp_path,
            files=(FileSpec("main.go", "package main"),),
        )
    with pytest.raises(ValueError, match="only the fmt operation"):
        ExecutionPlan(
            strategy=Strategy.PROJECT_PATH_ONLY,
            origin=WorkspaceOrigin.EXISTING,
            operation=Operation.BUILD,
            limits=LIMITS,
            command=("go", "build", "."),
            existing_root=tmp_path,
            mutates_in_place=True,
        )


def test_workspace_caller_owned_must_be_existing(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="caller-owned"):
        Workspace(root=tmp_path, origin=WorkspaceOrigin.EPHEMERAL, caller_owned=True)


def test_result_to_json_is_canonical() -> None:
    result = ExecutionResult(
        success=False,
        exit_code=1,
        stdout="",
        stderr="./main.go:3:1: undefined: x\n",
        duration_seconds=0.25,
        strategy=Strategy.CODE_ONLY,
        origin=WorkspaceOrigin.EPHEMERAL,
        operation=Operation.BUILD,
        error_kind=ErrorKind.TOOLCHAIN_FAILURE,
        diagnostics=(
            Diagnostic(
                type=DiagnosticType.COMPILATION,
                message="undefined: x",
                file="./main.go",
                line=3,
                column=1,
            ),
        ),
        artifacts={"workspace_root": Path("/tmp/godev-x")},  # type: ignore[dict-item]
    )

    payload = json.loads(result.to_json())

    assert payload["strategy"] == "code_only"
    assert payload["origin"] == "ephemeral"
    assert payload["error_kind"] == "toolchain_failure"
    assert payload["diagnostics"][0]["type"] == "compilation"
    assert payload["artifacts"]["workspace_root"] == "/tmp/godev-x"
    assert result.to_json() == json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


@settings(max_examples=60, deadline=None)
@given(st.from_regex(r"[a-z][a-z0-9_]{0,12}(/[a-z][a-z0-9_]{0,12}){0,3}", fullmatch=True))
def test_derived_test_file_is_a_go_test_file_beside_main(stem: str) -> None:
    main_file = f"{stem}.go"
    test_file = derive_test_filename(main_file)
    assert test_file.endswith("_test.go")
    assert PurePosixPath(test_file).parent == PurePosixPath(main_file).parent
