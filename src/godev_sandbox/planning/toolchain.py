"""Argv construction for Go toolchain operations.

Commands are always argv tuples handed to ``exec``; nothing here is ever passed
through a shell.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from godev_sandbox.constants import SYNTHESIZED_MODULE_NAME
from godev_sandbox.domain.models import ModCommand, Operation, WorkCommand

if TYPE_CHECKING:
    from godev_sandbox.domain.models import ExecutionRequest

# mod subcommands that rewrite go.mod, go.sum or vendor/ in their working tree.
MUTATING_MOD_COMMANDS: frozenset[ModCommand] = frozenset(
    {ModCommand.INIT, ModCommand.TIDY, ModCommand.VENDOR}
)

# work subcommands that write go.work, go.work.sum or vendor/.
MUTATING_WORK_COMMANDS: frozenset[WorkCommand] = frozenset(
    {WorkCommand.INIT, WorkCommand.USE, WorkCommand.SYNC, WorkCommand.VENDOR}
)

PLACEHOLDER_TEST_SOURCE = (
    "package main\n"
    "\n"
    'import "testing"\n'
    "\n"
    "func TestPlaceholder(t *testing.T) {\n"
    '\tt.Log("No specific tests provided. This is a placeholder test.")\n'
    "}\n"
)


@dataclass(frozen=True, slots=True)
class Toolchain:
    """Binaries used to run Go operations."""

    go_binary: str = "go"
    gofmt_binary: str = "gofmt"

    def __post_init__(self) -> None:
        for name in ("go_binary", "gofmt_binary"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} must be a non-empty string")


def build_command(
    request: ExecutionRequest,
    toolchain: Toolchain,
    *,
    snippet: bool,
    output_target: str | None = None,
) -> tuple[str, ...]:
    """Return the argv for ``request.operation``.

    ``snippet`` selects single-file targets where the operation distinguishes them
    (``gofmt`` on the overlay file). ``output_target`` is the ``-o`` value for builds.
    """

    go = toolchain.go_binary
    tags = _tags(request.build_tags)
    operation = request.operation

    if operation is Operation.BUILD:
        if not output_target:
            raise ValueError("build commands require an output target")
        return (go, "build", *tags, "-o", output_target, ".")

    if operation is Operation.TEST:
        argv = [go, "test"]
        if request.verbose:
            argv.append("-v")
        if request.coverage:
            argv.append("-cover")
        if request.test_pattern:
            argv.extend(("-run", request.test_pattern))
        argv.extend(tags)
        argv.append("./...")
        return tuple(argv)

    if operation is Operation.RUN:
        return (go, "run", *tags, ".", *request.run_args)

    if operation is Operation.MOD:
        mod_command = request.mod_command
        if mod_command is None:
            raise ValueError("mod operations require a mod command")
        argv = [go, "mod", mod_command.value]
        if mod_command is ModCommand.INIT:
            argv.append(request.module_path or SYNTHESIZED_MODULE_NAME)
        return tuple(argv)

    if operation is Operation.FMT:
        target = request.main_file if snippet else "."
        return (toolchain.gofmt_binary, "-l", "-w", target)

    if operation is Operation.VET:
        return (go, "vet", *tags, "./...")

    if operation is Operation.WORK:
        return _work_command(request, go)

    raise ValueError(f"unsupported operation: {operation!r}")


def needs_module_descriptor(request: ExecutionRequest) -> bool:
    """Whether the operation needs a ``go.mod`` in its working directory."""

    if request.operation in (Operation.FMT, Operation.WORK):
        return False
    if request.operation is Operation.MOD:
        return request.mod_command is not ModCommand.INIT
    return True


def _work_command(request: ExecutionRequest, go: str) -> tuple[str, ...]:
    work_command = request.work_command
    if work_command is None:
        raise ValueError("work operations require a work command")
    if work_command is WorkCommand.INFO:
        # Lists every module the go.work file brings into the build.
        return (go, "list", "-m", "-json")
    if work_command is WorkCommand.EDIT:
        return (go, "work", "edit", "-json")
    if work_command in (WorkCommand.INIT, WorkCommand.USE):
        return (go, "work", work_command.value, *request.modules)
    return (go, "work", work_command.value)


def _tags(build_tags: str | None) -> tuple[str, ...]:
    if not build_tags:
        return ()
    return ("-tags", build_tags)


__all__ = [
    "MUTATING_MOD_COMMANDS",
    "MUTATING_WORK_COMMANDS",
    "PLACEHOLDER_TEST_SOURCE",
    "Toolchain",
    "build_command",
    "needs_module_descriptor",
]
