"""Executable CLI entrypoint for ``godev_sandbox``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    # Toolchain reported failure, timed out, or hit a resource ceiling.
    EXECUTION_FAILED = 1
    # Bad request or bad configuration.
    INVALID_REQUEST = 2
    MATERIALIZATION_FAILURE = 3
    INTERNAL_ERROR = 4


# Keyed by ErrorKind value; the domain package is imported lazily.
_SANDBOX_EXIT_CODES: dict[str, ExitCode] = {
    "invalid_request": ExitCode.INVALID_REQUEST,
    "materialization_failure": ExitCode.MATERIALIZATION_FAILURE,
}


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m godev_sandbox`` and the ``godev`` script."""

    try:
        from godev_sandbox.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.EXECUTION_FAILED)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in set(ExitCode):
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    from godev_sandbox.config.loader import ConfigLoadError
    from godev_sandbox.config.schema import ConfigValidationError
    from godev_sandbox.domain.errors import SandboxError

    for item in _causes(exc):
        if isinstance(item, (ConfigLoadError, ConfigValidationError)):
            return ExitCode.INVALID_REQUEST
        if isinstance(item, SandboxError):
            return _SANDBOX_EXIT_CODES.get(item.kind, ExitCode.INTERNAL_ERROR)
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None or current.__suppress_context__:
            current = current.__cause__
        else:
            current = current.__context__


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(str(exc).strip() or exc.__class__.__name__)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
