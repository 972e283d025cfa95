"""Domain types shared by the resolver, materializer, executor and controller."""

from godev_sandbox.domain.errors import (
    ErrorKind,
    InternalExecutionError,
    InvalidRequestError,
    MaterializationError,
    SandboxError,
)
from godev_sandbox.domain.ids import (
    EXECUTION_ID_PREFIX,
    generate_execution_id,
    generate_ulid,
)
from godev_sandbox.domain.models import (
    Diagnostic,
    DiagnosticType,
    ExecutionOutcome,
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
)

__all__ = [
    "EXECUTION_ID_PREFIX",
    "Diagnostic",
    "DiagnosticType",
    "ErrorKind",
    "ExecutionOutcome",
    "ExecutionPlan",
    "ExecutionRequest",
    "ExecutionResult",
    "FileSpec",
    "InternalExecutionError",
    "InvalidRequestError",
    "MaterializationError",
    "ModCommand",
    "Operation",
    "ResourceLimits",
    "SandboxError",
    "Strategy",
    "Workspace",
    "WorkCommand",
    "WorkspaceOrigin",
    "generate_execution_id",
    "generate_ulid",
]
