"""
godev-sandbox: unit tests for the CLI router

File: tests/unit/ui/test_cli.py

Purpose
- Validate argument routing, request assembly, exit codes and output modes without a Go toolchain.
"""

from __future__ import annotations

import io
import json
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from godev_sandbox.domain.errors import ErrorKind
from godev_sandbox.domain.models import (
    Diagnostic,
    DiagnosticType,
    ExecutionRequest,
    ExecutionResult,
    Operation,
    Strategy,
    WorkspaceOrigin,
)
from godev_sandbox.main import ExitCode
from godev_sandbox.observability.logging import shutdown_logging
from godev_sandbox.ui.cli import build_parser, exit_code_for, run_cli, split_run_args

HELLO = 'package main\n\nimport "fmt"\n\nfunc main() { fmt.Println("Hello") }\n'


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    for name in ("GODEV_PROFILE", "NO_COLOR"):
        monkeypatch.delenv(name, raising=False)
    yield
    shutdown_logging()
    structlog.reset_defaults()


class _RecordingController:
    requests: list[ExecutionRequest] = []
    result: ExecutionResult | None = None

    def __init__(self, config: object) -> None:
        self.config = config

    def execute_sync(self, request: ExecutionRequest) -> ExecutionResult:
        type(self).requests.append(request)
        assert type(self).result is not None
        return type(self).result


def _result(**overrides: object) -> ExecutionResult:
    values: dict[str, object] = {
        "success": True,
        "exit_code": 0,
        "stdout": "Hello\n",
        "stderr": "",
        "duration_seconds": 0.5,
        "strategy": Strategy.CODE_ONLY,
        "origin": WorkspaceOrigin.EPHEMERAL,
        "operation": Operation.RUN,
        "message": "run succeeded",
        "artifacts": {"limits_enforced": ["cpu_seconds"]},
    }
    values.update(overrides)
    return ExecutionResult(**values)  # type: ignore[arg-type]


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> type[_RecordingController]:
    _RecordingController.requests = []
    _RecordingController.result = _result()
    monkeypatch.setattr("godev_sandbox.ui.cli.ExecutionController", _RecordingController)
    return _RecordingController


def test_split_run_args_uses_first_separator() -> None:
    assert split_run_args(["run", "--code", "x"]) == (["run", "--code", "x"], ())
    assert split_run_args(["run", "--", "-n", "--", "3"]) == (["run"], ("-n", "--", "3"))


def test_parser_has_a_subcommand_per_operation() -> None:
    parser = build_parser()
    for operation in Operation:
        namespace = parser.parse_args([operation.value, "--code", "package main"])
        assert namespace.operation is operation
    assert parser.parse_args(["gc"]).max_age_hours == 24.0


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        (ErrorKind.INVALID_REQUEST, ExitCode.INVALID_REQUEST),
        (ErrorKind.MATERIALIZATION_FAILURE, ExitCode.MATERIALIZATION_FAILURE),
        (ErrorKind.EXECUTION_TIMEOUT, ExitCode.EXECUTION_FAILED),
        (ErrorKind.TOOLCHAIN_FAILURE, ExitCode.EXECUTION_FAILED),
        (ErrorKind.RESOURCE_LIMIT_EXCEEDED, ExitCode.EXECUTION_FAILED),
        (ErrorKind.INTERNAL_FAILURE, ExitCode.INTERNAL_ERROR),
    ],
)
def test_exit_code_for_maps_error_kinds(kind: ErrorKind, expected: ExitCode) -> None:
    assert exit_code_for(_result(success=False, exit_code=None, error_kind=kind)) == expected
    assert exit_code_for(_result()) == ExitCode.SUCCESS


def test_missing_source_is_invalid_request_json(capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["build", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert code == ExitCode.INVALID_REQUEST
    assert payload["success"] is False
    assert payload["error_kind"] == "invalid_request"
    assert payload["operation"] == "build"


def test_bad_main_file_is_rejected_before_execution(
    capsys: pytest.CaptureFixture[str], recorder: type[_RecordingController]
) -> None:
    code = run_cli(["run", "--code", HELLO, "--main-file", "notes.txt", "--json"])

    assert code == ExitCode.INVALID_REQUEST
    assert json.loads(capsys.readouterr().out)["error_kind"] == "invalid_request"
    assert recorder.requests == []


def test_run_args_only_valid_for_run(
    capsys: pytest.CaptureFixture[str], recorder: type[_RecordingController]
) -> None:
    code = run_cli(["build", "--code", HELLO, "--json", "--", "-x"])

    assert code == ExitCode.INVALID_REQUEST
    assert "only valid for 'run'" in json.loads(capsys.readouterr().out)["message"]
    assert recorder.requests == []


def test_vet_disabled_succeeds_without_toolchain(capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["vet", "--code", HELLO, "--no-vet", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert code == ExitCode.SUCCESS
    assert payload["success"] is True
    assert payload["artifacts"] == {"skipped": True}
    assert payload["strategy"] == "code_only"


def test_request_fields_are_assembled_from_flags(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    recorder: type[_RecordingController],
) -> None:
    code_file = tmp_path / "prog.go"
    code_file.write_text(HELLO, encoding="utf-8")
    test_file = tmp_path / "prog_test.go"
    test_file.write_text("package main\n", encoding="utf-8")

    code = run_cli(
        [
            "run",
            "--code-file",
            str(code_file),
            "--test-file",
            str(test_file),
            "--main-file",
            "cmd/app.go",
            "--tags",
            "integration",
            "--timeout",
            "2.5",
            "--keep-workspace",
            "--json",
            "--",
            "--name",
            "World",
        ]
    )

    assert code == ExitCode.SUCCESS
    request = recorder.requests[0]
    assert request.operation is Operation.RUN
    assert request.code == HELLO
    assert request.test_code == "package main\n"
    assert request.main_file == "cmd/app.go"
    assert request.build_tags == "integration"
    assert request.timeout_seconds == 2.5
    assert request.retain_workspace
    assert request.run_args == ("--name", "World")
    assert json.loads(capsys.readouterr().out)["stdout"] == "Hello\n"


def test_code_from_stdin(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    recorder: type[_RecordingController],
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(HELLO))

    assert run_cli(["fmt", "--code", "-", "--json"]) == ExitCode.SUCCESS
    assert recorder.requests[0].code == HELLO


def test_mod_flags(recorder: type[_RecordingController], tmp_path: Path) -> None:
    run_cli(
        [
            "mod",
            "--project",
            str(tmp_path),
            "--mod-command",
            "init",
            "--module-path",
            "example.com/app",
            "--json",
        ]
    )
    request = recorder.requests[0]
    assert request.mod_command is not None
    assert request.mod_command.value == "init"
    assert request.module_path == "example.com/app"
    assert request.project_path == str(tmp_path)


def test_work_flags(recorder: type[_RecordingController], tmp_path: Path) -> None:
    run_cli(
        [
            "work",
            "--project",
            str(tmp_path),
            "--work-command",
            "init",
            "--module",
            "./api",
            "--module",
            "./web",
            "--module-path",
            "example.com/unused",
            "--json",
        ]
    )
    request = recorder.requests[0]
    assert request.work_command is not None
    assert request.work_command.value == "init"
    assert request.modules == ("./api", "./web")
    assert request.module_path == "example.com/unused"


def test_unreadable_code_file_is_cli_error(capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["run", "--code-file", "missing.go"])

    assert code == ExitCode.INVALID_REQUEST
    assert "cannot read code file" in capsys.readouterr().err


def test_failed_result_renders_diagnostics(
    capsys: pytest.CaptureFixture[str], recorder: type[_RecordingController]
) -> None:
    recorder.result = _result(
        success=False,
        exit_code=1,
        stdout="",
        stderr="./main.go:5:2: undefined: fmt.Printn\n",
        error_kind=ErrorKind.TOOLCHAIN_FAILURE,
        message="build failed with exit code 1",
        diagnostics=(
            Diagnostic(
                type=DiagnosticType.COMPILATION,
                message="undefined: fmt.Printn",
                file="./main.go",
                line=5,
                column=2,
                suggestions=("Check if you have imported the necessary package",),
            ),
        ),
    )

    code = run_cli(["build", "--code", HELLO, "--no-color"])

    out = capsys.readouterr().out
    assert code == ExitCode.EXECUTION_FAILED
    assert "FAILED" in out
    assert "[toolchain_failure]" in out
    assert "undefined: fmt.Printn" in out
    assert "Check if you have imported the necessary package" in out
    assert "limits_enforced" not in out


def test_config_json_is_redacted_and_reflects_profile(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "godev.toml"
    config_path.write_text('[sandbox]\nmodule_proxies = ["https://proxy.golang.org"]\n')

    code = run_cli(["config", "--json", "--profile", "strict", "--config", str(config_path)])

    payload = json.loads(capsys.readouterr().out)
    assert code == ExitCode.SUCCESS
    assert payload["command"] == "config"
    assert payload["active_profile"] == "strict"
    assert payload["config"]["sandbox"]["max_concurrent"] == 1


def test_invalid_config_exits_with_invalid_request(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "godev.toml"
    config_path.write_text('[sandbox]\nnetwork_policy = "open"\n')

    code = run_cli(["config", "--config", str(config_path)])

    assert code == ExitCode.INVALID_REQUEST
    assert "sandbox.network_policy" in capsys.readouterr().err


def test_gc_removes_only_stale_prefixed_roots(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    temp_root = tmp_path / "scratch"
    stale = temp_root / "godev-stale"
    stale.mkdir(parents=True)
    unrelated = temp_root / "other-dir"
    unrelated.mkdir()
    config_path = tmp_path / "godev.toml"
    config_path.write_text(f'[sandbox]\ntemp_root = "{temp_root.as_posix()}"\n')

    gc_args = ["gc", "--config", str(config_path), "--max-age-hours", "0", "--json"]
    dry = run_cli([*gc_args, "--dry-run"])
    dry_payload = json.loads(capsys.readouterr().out)
    assert dry == ExitCode.SUCCESS
    assert dry_payload["removed"] == [str(stale.resolve())]
    assert stale.exists()

    real = run_cli(gc_args)
    assert real == ExitCode.SUCCESS
    assert json.loads(capsys.readouterr().out)["dry_run"] is False
    assert not stale.exists()
    assert unrelated.exists()


def test_gc_rejects_negative_age(capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["gc", "--max-age-hours", "-1"]) == ExitCode.INVALID_REQUEST
    assert "--max-age-hours" in capsys.readouterr().err
