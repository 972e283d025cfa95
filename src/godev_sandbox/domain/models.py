"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum, StrEnum
from pathlib import Path, PurePosixPath
from typing import TypeVar, cast

from godev_sandbox.constants import DEFAULT_MAIN_FILE
from godev_sandbox.domain.errors import ErrorKind, InvalidRequestError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_RUN_ARGS = 256
_MAX_WORK_MODULES = 64

TEnum = TypeVar("TEnum", bound=Enum)


class Operation(StrEnum):
    BUILD = "build"
    TEST = "test"
    RUN = "run"
    MOD = "mod"
    FMT = "fmt"
    VET = "vet"
    WORK = "work"


class Strategy(StrEnum):
    CODE_ONLY = "code_only"
    PROJECT_PATH_ONLY = "project_path_only"
    HYBRID = "hybrid"


class WorkspaceOrigin(StrEnum):
    EPHEMERAL = "ephemeral"
    EXISTING = "existing"


class ModCommand(StrEnum):
    INIT = "init"
    TIDY = "tidy"
    VENDOR = "vendor"
    VERIFY = "verify"
    WHY = "why"
    GRAPH = "graph"
    DOWNLOAD = "download"


class WorkCommand(StrEnum):
    INIT = "init"
    USE = "use"
    SYNC = "sync"
    EDIT = "edit"
    VENDOR = "vendor"
    INFO = "info"


class DiagnosticType(StrEnum):
    COMPILATION = "compilation"
    UNKNOWN = "unknown"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self)
        if not isinstance(serialized, dict):
            raise TypeError(f"{type(self).__name__} must serialize to an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class ExecutionRequest(CanonicalModel):
    """One caller request: source material plus per-operation flags.

    At least one of ``code`` and ``project_path`` must be present; both together
    select the hybrid strategy. Empty strings are treated as absent.
    """

    operation: Operation
    code: str | None = None
    test_code: str | None = None
    project_path: str | None = None
    main_file: str = DEFAULT_MAIN_FILE
    build_tags: str | None = None
    output_path: str | None = None
    test_pattern: str | None = None
    verbose: bool = False
    coverage: bool = False
    vet: bool = True
    run_args: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    mod_command: ModCommand | None = None
    module_path: str | None = None
    work_command: WorkCommand | None = None
    modules: tuple[str, ...] = ()
    retain_workspace: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "operation", _coerce_enum(Operation, self.operation, "operation"))
        for name in (
            "code",
            "test_code",
            "project_path",
            "build_tags",
            "output_path",
            "test_pattern",
            "module_path",
        ):
            object.__setattr__(self, name, _optional_text(getattr(self, name), name))

        main_file = _optional_text(self.main_file, "main_file")
        main_file = (main_file or DEFAULT_MAIN_FILE).replace("\\", "/")
        main_path = PurePosixPath(main_file)
        # Containment is checked when the overlay is written into a workspace.
        if main_path.suffix != ".go" or main_path.name.endswith("_test.go"):
            raise InvalidRequestError(f"main_file must name a non-test .go file: {main_file!r}")
        object.__setattr__(self, "main_file", main_path.as_posix())

        if isinstance(self.run_args, (str, bytes)) or not isinstance(self.run_args, Sequence):
            raise InvalidRequestError("run_args must be a sequence of strings")
        if len(self.run_args) > _MAX_RUN_ARGS:
            raise InvalidRequestError(f"run_args must contain at most {_MAX_RUN_ARGS} items")
        for item in self.run_args:
            if not isinstance(item, str):
                raise InvalidRequestError("run_args must contain only strings")
            if "\x00" in item:
                raise InvalidRequestError("run_args must not contain NUL bytes")
        object.__setattr__(self, "run_args", tuple(self.run_args))

        if self.timeout_seconds is not None:
            try:
                timeout = float(self.timeout_seconds)
            except (TypeError, ValueError):
                raise InvalidRequestError(
                    f"timeout_seconds must be a number: {self.timeout_seconds!r}"
                ) from None
            if not math.isfinite(timeout) or timeout <= 0:
                raise InvalidRequestError("timeout_seconds must be a finite number > 0")
            object.__setattr__(self, "timeout_seconds", timeout)

        if self.mod_command is not None:
            object.__setattr__(
                self, "mod_command", _coerce_enum(ModCommand, self.mod_command, "mod_command")
            )
        if self.operation is Operation.MOD and self.mod_command is None:
            raise InvalidRequestError(
                "mod_command is required for the mod operation; expected one of: "
                + ", ".join(item.value for item in ModCommand)
            )

        if self.work_command is not None:
            object.__setattr__(
                self, "work_command", _coerce_enum(WorkCommand, self.work_command, "work_command")
            )
        if self.operation is Operation.WORK and self.work_command is None:
            raise InvalidRequestError(
                "work_command is required for the work operation; expected one of: "
                + ", ".join(item.value for item in WorkCommand)
            )
        object.__setattr__(self, "modules", _module_dirs(self.modules))
        if self.work_command is WorkCommand.USE and not self.modules:
            raise InvalidRequestError("modules are required for the 'use' work command")

    @property
    def has_code(self) -> bool:
        return self.code is not None

    @property
    def has_project(self) -> bool:
        return self.project_path is not None

    @property
    def test_file(self) -> str:
        return derive_test_filename(self.main_file)


@dataclass(frozen=True, slots=True)
class FileSpec(CanonicalModel):
    """One file to write into a workspace, addressed by a relative POSIX path."""

    path: str
    content: str

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path.strip():
            raise ValueError("FileSpec.path must be a non-empty string")
        if not isinstance(self.content, str):
            raise ValueError("FileSpec.content must be a string")


@dataclass(frozen=True, slots=True)
class ResourceLimits(CanonicalModel):
    """Ceilings applied to a single toolchain process."""

    cpu_seconds: int
    memory_mb: int
    timeout_seconds: float
    max_output_bytes: int

    def __post_init__(self) -> None:
        if self.cpu_seconds < 0:
            raise ValueError("cpu_seconds must be >= 0 (0 disables the ceiling)")
        if self.memory_mb < 0:
            raise ValueError("memory_mb must be >= 0 (0 disables the ceiling)")
        if not math.isfinite(self.timeout_seconds) or self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be finite and > 0")
        if self.max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")


@dataclass(frozen=True, slots=True)
class ExecutionPlan(CanonicalModel):
    """Immutable materialization and execution plan produced by the resolver."""

    strategy: Strategy
    origin: WorkspaceOrigin
    operation: Operation
    limits: ResourceLimits
    command: tuple[str, ...]
    files: tuple[FileSpec, ...] = ()
    source_project: Path | None = None
    existing_root: Path | None = None
    requires_module_descriptor: bool = False
    mutates_in_place: bool = False
    retain_workspace: bool = False
    skip_execution: bool = False
    build_output: str | None = None
    env_overrides: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.command and not self.skip_execution:
            raise ValueError("command must not be empty")
        if self.origin is WorkspaceOrigin.EXISTING:
            if self.existing_root is None:
                raise ValueError("existing-origin plans require existing_root")
            if self.files:
                raise ValueError("existing-origin plans must not write files")
        elif self.existing_root is not None:
            raise ValueError("ephemeral plans must not reference existing_root")
        if self.mutates_in_place and self.operation is not Operation.FMT:
            raise ValueError("only the fmt operation may rewrite a caller-owned project")


@dataclass(frozen=True, slots=True)
class Workspace:
    """Materialized filesystem root for one execution."""

    root: Path
    origin: WorkspaceOrigin
    caller_owned: bool

    def __post_init__(self) -> None:
        if self.caller_owned and self.origin is not WorkspaceOrigin.EXISTING:
            raise ValueError("only existing workspaces can be caller-owned")


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Raw result of one sandboxed process."""

    exit_code: int | None
    stdout: bytes
    stderr: bytes
    duration_seconds: float
    timed_out: bool = False
    resource_limit_exceeded: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    limits_enforced: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Diagnostic(CanonicalModel):
    """One structured diagnostic extracted from toolchain output."""

    type: DiagnosticType
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ExecutionResult(CanonicalModel):
    """Canonical result handed back to the protocol layer."""

    success: bool
    exit_code: int | None
    stdout: str
    stderr: str
    duration_seconds: float
    strategy: Strategy | None
    origin: WorkspaceOrigin | None
    operation: Operation | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    resource_limit_exceeded: bool = False
    error_kind: ErrorKind | None = None
    message: str = ""
    diagnostics: tuple[Diagnostic, ...] = ()
    artifacts: Mapping[str, JSONValue] = field(default_factory=dict)


def derive_test_filename(main_file: str) -> str:
    """Return the ``_test.go`` companion for ``main_file`` (``main.go`` -> ``main_test.go``)."""

    path = PurePosixPath(main_file.replace("\\", "/"))
    suffix = path.suffix or ".go"
    stem = path.name[: -len(path.suffix)] if path.suffix else path.name
    return str(path.with_name(f"{stem}_test{suffix}"))


def _optional_text(value: object, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequestError(f"{field_name} must be a string, got {type(value).__name__}")
    if field_name in {"code", "test_code"}:
        return value if value.strip() else None
    stripped = value.strip()
    if "\x00" in stripped:
        raise InvalidRequestError(f"{field_name} must not contain NUL bytes")
    return stripped or None


def _module_dirs(value: object) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise InvalidRequestError("modules must be a sequence of directory paths")
    if len(value) > _MAX_WORK_MODULES:
        raise InvalidRequestError(f"modules must contain at most {_MAX_WORK_MODULES} items")
    dirs: list[str] = []
    for item in value:
        text = _optional_text(item, "modules")
        if text is None:
            raise InvalidRequestError("modules must not contain empty entries")
        dirs.append(text)
    return tuple(dirs)


def _coerce_enum(enum_type: type[TEnum], value: object, field_name: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        try:
            return enum_type(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(str(item.value) for item in enum_type)
    raise InvalidRequestError(f"unsupported {field_name} {value!r}; expected one of: {allowed}")


def _serialize_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Enum):
        return _serialize_value(value.value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: _serialize_value(getattr(value, item.name)) for item in fields(value)}
    if isinstance(value, Mapping):
        return {str(key): _serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]
    return repr(value)


__all__ = [
    "CanonicalModel",
    "Diagnostic",
    "DiagnosticType",
    "ExecutionOutcome",
    "ExecutionPlan",
    "ExecutionRequest",
    "ExecutionResult",
    "FileSpec",
    "JSONScalar",
    "JSONValue",
    "ModCommand",
    "Operation",
    "ResourceLimits",
    "Strategy",
    "Workspace",
    "WorkCommand",
    "WorkspaceOrigin",
    "derive_test_filename",
]
