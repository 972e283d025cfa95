"""Error taxonomy shared by the resolver, materializer, executor and controller."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure categories surfaced on :class:`ExecutionResult.error_kind`."""

    INVALID_REQUEST = "invalid_request"
    MATERIALIZATION_FAILURE = "materialization_failure"
    EXECUTION_TIMEOUT = "execution_timeout"
    TOOLCHAIN_FAILURE = "toolchain_failure"
    RESOURCE_LIMIT_EXCEEDED = "resource_limit_exceeded"
    INTERNAL_FAILURE = "internal_failure"


class SandboxError(RuntimeError):
    """Base error for failures that prevent a toolchain operation from running."""

    kind: ErrorKind = ErrorKind.INTERNAL_FAILURE


class InvalidRequestError(SandboxError, ValueError):
    """Raised when a request cannot be planned (missing inputs, bad project path)."""

    kind = ErrorKind.INVALID_REQUEST


class MaterializationError(SandboxError):
    """Raised when creating, copying or overlaying workspace files fails."""

    kind = ErrorKind.MATERIALIZATION_FAILURE


class InternalExecutionError(SandboxError):
    """Raised when the host cannot spawn or supervise the toolchain process."""

    kind = ErrorKind.INTERNAL_FAILURE


__all__ = [
    "ErrorKind",
    "InternalExecutionError",
    "InvalidRequestError",
    "MaterializationError",
    "SandboxError",
]
