"""Command-line interface router for godev-sandbox."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from godev_sandbox.config import (
    ConfigLoadError,
    ConfigValidationError,
    SandboxConfig,
    effective_config,
    load_config,
)
from godev_sandbox.control_plane.controller import ExecutionController
from godev_sandbox.control_plane.normalizer import failure_result
from godev_sandbox.domain.errors import ErrorKind, InvalidRequestError
from godev_sandbox.domain.ids import generate_ulid
from godev_sandbox.domain.models import (
    ExecutionRequest,
    ExecutionResult,
    ModCommand,
    Operation,
    WorkCommand,
)
from godev_sandbox.main import ExitCode
from godev_sandbox.observability.logging import setup_logging, shutdown_logging
from godev_sandbox.ui.render import CLIRenderer, create_renderer
from godev_sandbox.workspace.workspace_manager import WorkspaceManager

_STDIN_MARKER: Final[str] = "-"
_RUN_ARGS_SEPARATOR: Final[str] = "--"
DEFAULT_GC_MAX_AGE_HOURS: Final[float] = 24.0

_EXIT_CODES: Final[dict[ErrorKind, ExitCode]] = {
    ErrorKind.INVALID_REQUEST: ExitCode.INVALID_REQUEST,
    ErrorKind.MATERIALIZATION_FAILURE: ExitCode.MATERIALIZATION_FAILURE,
    ErrorKind.EXECUTION_TIMEOUT: ExitCode.EXECUTION_FAILED,
    ErrorKind.TOOLCHAIN_FAILURE: ExitCode.EXECUTION_FAILED,
    ErrorKind.RESOURCE_LIMIT_EXCEEDED: ExitCode.EXECUTION_FAILED,
    ErrorKind.INTERNAL_FAILURE: ExitCode.INTERNAL_ERROR,
}

_OPERATION_HELP: Final[dict[Operation, str]] = {
    Operation.BUILD: "Compile the program (go build).",
    Operation.TEST: "Run tests (go test).",
    Operation.RUN: "Compile and run the program (go run).",
    Operation.MOD: "Run a module maintenance command (go mod ...).",
    Operation.FMT: "Format sources (gofmt -l -w).",
    Operation.VET: "Run static checks (go vet).",
    Operation.WORK: "Manage a multi-module workspace (go work ...).",
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="godev",
        description=(
            "godev-sandbox: run the Go toolchain against snippets and projects in isolation.\n\n"
            "Common workflows:\n"
            "  godev run --code-file main.go            Run a single-file program\n"
            "  godev test --project ./svc -v            Test a project without touching it\n"
            "  godev test --project ./svc --code -      Overlay stdin onto a project copy\n"
            "  godev config --json                      Show the effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to godev TOML config (default: ./godev.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (strict, permissive, or user-defined).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Verbose toolchain output (go test -v) and detailed rendering.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit a single machine-readable JSON document.",
    )

    request = argparse.ArgumentParser(add_help=False)
    source = request.add_mutually_exclusive_group()
    source.add_argument("--code-file", default=None, help="Read Go source from a file.")
    source.add_argument(
        "--code",
        default=None,
        help="Go source text; pass '-' to read it from stdin.",
    )
    request.add_argument("--test-file", default=None, help="Read Go test source from a file.")
    request.add_argument("--project", dest="project_path", default=None, help="Go project root.")
    request.add_argument("--main-file", default=None, help="File name for inline code.")
    request.add_argument("--tags", dest="build_tags", default=None, help="Build tags.")
    request.add_argument("--output", dest="output_path", default=None, help="Build output path.")
    request.add_argument("--coverage", action="store_true", default=False, help="Report coverage.")
    request.add_argument("--run", dest="test_pattern", default=None, help="Test name pattern.")
    request.add_argument(
        "--timeout",
        dest="timeout_seconds",
        type=float,
        default=None,
        help="Wall-clock timeout in seconds for this request.",
    )
    request.add_argument("--no-vet", action="store_true", default=False, help="Disable vetting.")
    request.add_argument(
        "--keep-workspace",
        action="store_true",
        default=False,
        help="Keep the ephemeral workspace after execution for inspection.",
    )
    request.add_argument(
        "--mod-command",
        choices=[item.value for item in ModCommand],
        default=None,
        help="Module subcommand for 'godev mod'.",
    )
    request.add_argument("--module-path", default=None, help="Module path for 'go mod init'.")
    request.add_argument(
        "--work-command",
        choices=[item.value for item in WorkCommand],
        default=None,
        help="Workspace subcommand for 'godev work'.",
    )
    request.add_argument(
        "--module",
        dest="modules",
        action="append",
        default=None,
        help="Module directory for 'go work init' or 'go work use' (repeatable).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    for operation in Operation:
        sub = subparsers.add_parser(
            operation.value,
            parents=[common, request],
            help=_OPERATION_HELP[operation],
            description=(
                _OPERATION_HELP[operation]
                + "\nArguments after '--' are passed to the program (run only)."
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        sub.set_defaults(handler=_cmd_execute, operation=operation)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective configuration (secrets redacted).",
    )
    config_parser.set_defaults(handler=_cmd_config)

    gc_parser = subparsers.add_parser(
        "gc",
        parents=[common],
        help="Remove stale ephemeral workspaces left behind by crashed runs.",
    )
    gc_parser.add_argument(
        "--max-age-hours",
        type=float,
        default=DEFAULT_GC_MAX_AGE_HOURS,
        help=f"Only remove workspaces older than this (default: {DEFAULT_GC_MAX_AGE_HOURS:g}).",
    )
    gc_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="List what would be removed without deleting anything.",
    )
    gc_parser.set_defaults(handler=_cmd_gc)
    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    raw = list(argv) if argv is not None else sys.argv[1:]
    own_args, run_args = split_run_args(raw)

    parser = build_parser()
    namespace = parser.parse_args(own_args)
    namespace.run_args = run_args
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.INVALID_REQUEST)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def split_run_args(argv: Sequence[str]) -> tuple[list[str], tuple[str, ...]]:
    """Split ``argv`` at the first ``--``; everything after it goes to the program."""

    items = list(argv)
    if _RUN_ARGS_SEPARATOR not in items:
        return items, ()
    index = items.index(_RUN_ARGS_SEPARATOR)
    return items[:index], tuple(items[index + 1 :])


def exit_code_for(result: ExecutionResult) -> int:
    """Map an execution result onto the process exit-code contract."""

    if result.success:
        return int(ExitCode.SUCCESS)
    if result.error_kind is None:
        return int(ExitCode.EXECUTION_FAILED)
    return int(_EXIT_CODES[result.error_kind])


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_execute(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_config = _sandbox_config(config)
    operation: Operation = args.operation

    try:
        request = _build_request(args, operation)
    except InvalidRequestError as exc:
        result = failure_result(exc, operation=operation)
    else:
        with _logging_session(config):
            controller = ExecutionController(sandbox_config)
            result = controller.execute_sync(request)

    if _flag(args, "json"):
        _emit_json(result.to_dict())
    else:
        _get_renderer(args).result(result)
    return exit_code_for(result)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


def _cmd_gc(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_config = _sandbox_config(config)
    max_age_hours = float(args.max_age_hours)
    if max_age_hours < 0:
        raise CLIError("--max-age-hours must be >= 0", exit_code=int(ExitCode.INVALID_REQUEST))
    dry_run = _flag(args, "dry_run")

    with _logging_session(config):
        manager = WorkspaceManager(
            sandbox_config.temp_root,
            prefix=sandbox_config.workspace_prefix,
        )
        removed = manager.gc(max_age_hours, dry_run=dry_run)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "gc",
                "dry_run": dry_run,
                "temp_root": str(manager.temp_root),
                "removed": [str(path) for path in removed],
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    verb = "Would remove" if dry_run else "Removed"
    renderer.kv("Temp root", manager.temp_root)
    renderer.kv(verb, f"{len(removed)} workspace(s)")
    renderer.items([str(path) for path in removed])
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Request assembly
# ---------------------------------------------------------------------------


def _build_request(args: argparse.Namespace, operation: Operation) -> ExecutionRequest:
    code = _read_source(
        inline=_optional_str(getattr(args, "code", None)),
        path=_optional_str(getattr(args, "code_file", None)),
        label="code",
    )
    test_code = _read_source(
        inline=None,
        path=_optional_str(getattr(args, "test_file", None)),
        label="test",
    )
    run_args = tuple(getattr(args, "run_args", ()))
    if run_args and operation is not Operation.RUN:
        raise InvalidRequestError(
            f"program arguments after '--' are only valid for 'run', not {operation.value!r}"
        )

    fields: dict[str, Any] = {
        "operation": operation,
        "code": code,
        "test_code": test_code,
        "project_path": _optional_str(getattr(args, "project_path", None)),
        "build_tags": _optional_str(getattr(args, "build_tags", None)),
        "output_path": _optional_str(getattr(args, "output_path", None)),
        "test_pattern": _optional_str(getattr(args, "test_pattern", None)),
        "verbose": _flag(args, "verbose"),
        "coverage": _flag(args, "coverage"),
        "vet": not _flag(args, "no_vet"),
        "run_args": run_args,
        "timeout_seconds": getattr(args, "timeout_seconds", None),
        "mod_command": _optional_str(getattr(args, "mod_command", None)),
        "module_path": _optional_str(getattr(args, "module_path", None)),
        "work_command": _optional_str(getattr(args, "work_command", None)),
        "modules": tuple(getattr(args, "modules", None) or ()),
        "retain_workspace": _flag(args, "keep_workspace"),
    }
    main_file = _optional_str(getattr(args, "main_file", None))
    if main_file is not None:
        fields["main_file"] = main_file
    return ExecutionRequest(**fields)


def _read_source(*, inline: str | None, path: str | None, label: str) -> str | None:
    if inline is not None:
        if inline == _STDIN_MARKER:
            return sys.stdin.read()
        return inline
    if path is None:
        return None
    source = Path(path).expanduser()
    try:
        return source.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CLIError(
            f"cannot read {label} file {source}: {exc}",
            exit_code=int(ExitCode.INVALID_REQUEST),
        ) from exc


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    """Create a CLI renderer from the parsed namespace."""

    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


# ---------------------------------------------------------------------------
# Helpers: config and logging
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        return load_config(config_path, profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INVALID_REQUEST)) from exc


def _sandbox_config(config: Mapping[str, object]) -> SandboxConfig:
    try:
        return SandboxConfig.from_mapping(config)
    except ConfigValidationError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INVALID_REQUEST)) from exc


@contextmanager
def _logging_session(config: Mapping[str, Any]) -> Iterator[None]:
    """Route library logs to the configured sinks for the duration of one command."""

    observability = config.get("observability")
    setup_logging(
        observability if isinstance(observability, Mapping) else None,
        run_id=f"cli-{generate_ulid()}",
    )
    try:
        yield
    finally:
        shutdown_logging()


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "exit_code_for", "run_cli", "split_run_args"]
