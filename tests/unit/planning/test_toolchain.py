"""Unit tests for Go toolchain argv construction."""

from __future__ import annotations

import pytest

from godev_sandbox.domain.models import ExecutionRequest, ModCommand, Operation, WorkCommand
from godev_sandbox.planning.toolchain import (
    MUTATING_MOD_COMMANDS,
    MUTATING_WORK_COMMANDS,
    PLACEHOLDER_TEST_SOURCE,
    Toolchain,
    build_command,
    needs_module_descriptor,
)

GO = Toolchain()


def _request(operation: Operation, **kwargs: object) -> ExecutionRequest:
    kwargs.setdefault("code", "package main\n")
    return ExecutionRequest(operation=operation, **kwargs)  # type: ignore[arg-type]


def test_build_command_includes_tags_and_output() -> None:
    argv = build_command(
        _request(Operation.BUILD, build_tags="integration"),
        GO,
        snippet=True,
        output_target="output",
    )
    assert argv == ("go", "build", "-tags", "integration", "-o", "output", ".")


def test_build_command_requires_output_target() -> None:
    with pytest.raises(ValueError, match="output target"):
        build_command(_request(Operation.BUILD), GO, snippet=True)


def test_test_command_flags_in_stable_order() -> None:
    argv = build_command(
        _request(
            Operation.TEST,
            verbose=True,
            coverage=True,
            test_pattern="TestGreeting",
            build_tags="unit",
        ),
        GO,
        snippet=True,
    )
    assert argv == (
        "go",
        "test",
        "-v",
        "-cover",
        "-run",
        "TestGreeting",
        "-tags",
        "unit",
        "./...",
    )


def test_run_command_passes_program_arguments_verbatim() -> None:
    argv = build_command(
        _request(Operation.RUN, run_args=("--name", "World; rm -rf /")),
        GO,
        snippet=True,
    )
    assert argv == ("go", "run", ".", "--name", "World; rm -rf /")


@pytest.mark.parametrize(
    ("mod_command", "module_path", "expected"),
    [
        (ModCommand.INIT, None, ("go", "mod", "init", "sandbox")),
        (ModCommand.INIT, "example.com/app", ("go", "mod", "init", "example.com/app")),
        (ModCommand.TIDY, None, ("go", "mod", "tidy")),
        (ModCommand.GRAPH, None, ("go", "mod", "graph")),
    ],
)
def test_mod_commands(
    mod_command: ModCommand, module_path: str | None, expected: tuple[str, ...]
) -> None:
    request = _request(Operation.MOD, mod_command=mod_command, module_path=module_path)
    assert build_command(request, GO, snippet=False) == expected


def test_fmt_targets_snippet_file_or_whole_tree() -> None:
    request = _request(Operation.FMT, main_file="app.go")
    tools = Toolchain(gofmt_binary="/opt/go/bin/gofmt")

    gofmt = "/opt/go/bin/gofmt"
    assert build_command(request, tools, snippet=True) == (gofmt, "-l", "-w", "app.go")
    assert build_command(request, tools, snippet=False) == (gofmt, "-l", "-w", ".")


def test_vet_command() -> None:
    assert build_command(_request(Operation.VET), GO, snippet=True) == ("go", "vet", "./...")


def test_module_descriptor_requirements() -> None:
    assert not needs_module_descriptor(_request(Operation.FMT))
    assert not needs_module_descriptor(_request(Operation.MOD, mod_command=ModCommand.INIT))
    assert needs_module_descriptor(_request(Operation.MOD, mod_command=ModCommand.TIDY))
    assert needs_module_descriptor(_request(Operation.BUILD))


def test_mutating_mod_commands_and_placeholder() -> None:
    assert MUTATING_MOD_COMMANDS == {ModCommand.INIT, ModCommand.TIDY, ModCommand.VENDOR}
    assert "func TestPlaceholder(t *testing.T)" in PLACEHOLDER_TEST_SOURCE
    assert PLACEHOLDER_TEST_SOURCE.startswith("package main\n")


def test_toolchain_rejects_blank_binaries() -> None:
    with pytest.raises(ValueError, match="go_binary"):
        Toolchain(go_binary=" ")


@pytest.mark.parametrize(
    ("work_command", "modules", "expected"),
    [
        (WorkCommand.INIT, (), ("go", "work", "init")),
        (WorkCommand.INIT, ("./api", "./web"), ("go", "work", "init", "./api", "./web")),
        (WorkCommand.USE, ("./tools",), ("go", "work", "use", "./tools")),
        (WorkCommand.SYNC, (), ("go", "work", "sync")),
        (WorkCommand.VENDOR, (), ("go", "work", "vendor")),
        (WorkCommand.EDIT, (), ("go", "work", "edit", "-json")),
        (WorkCommand.INFO, (), ("go", "list", "-m", "-json")),
    ],
)
def test_work_commands(
    work_command: WorkCommand, modules: tuple[str, ...], expected: tuple[str, ...]
) -> None:
    request = _request(
        Operation.WORK, code=None, project_path="/tmp", work_command=work_command, modules=modules
    )
    assert build_command(request, GO, snippet=False) == expected


def test_work_never_synthesizes_a_module_descriptor() -> None:
    request = _request(
        Operation.WORK, code=None, project_path="/tmp", work_command=WorkCommand.SYNC
    )
    assert not needs_module_descriptor(request)
    assert MUTATING_WORK_COMMANDS == {
        WorkCommand.INIT,
        WorkCommand.USE,
        WorkCommand.SYNC,
        WorkCommand.VENDOR,
    }
