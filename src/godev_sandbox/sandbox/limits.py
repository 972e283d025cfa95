"""Per-process resource ceilings applied in the child before ``exec``."""

from __future__ import annotations

import os
import re
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

try:  # pragma: no cover - platform dependent.
    import resource as _resource
except ImportError:  # pragma: no cover - non-POSIX hosts.
    _resource = None

if TYPE_CHECKING:
    from collections.abc import Callable

    from godev_sandbox.domain.models import ResourceLimits

LIMIT_CPU: Final[str] = "cpu_seconds"
LIMIT_MEMORY: Final[str] = "memory_mb"

_BYTES_PER_MB: Final[int] = 1024 * 1024

_OUT_OF_MEMORY_RE = re.compile(
    r"(fatal error: runtime: out of memory|runtime: cannot allocate memory"
    r"|cannot allocate memory|fatal error: out of memory|MemoryError|std::bad_alloc)",
    re.IGNORECASE,
)
_CPU_SIGNAL_RE = re.compile(r"signal: CPU time limit exceeded", re.IGNORECASE)
# How `go run` and `go test` report a child that was killed outright.
_KILLED_RE = re.compile(r"signal: killed", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ChildLimits:
    """Concrete ``setrlimit`` values for one child process.

    A value of ``None`` means that ceiling is not applied on this host.
    """

    cpu_seconds: int | None = None
    memory_bytes: int | None = None

    @property
    def enforced(self) -> tuple[str, ...]:
        names: list[str] = []
        if self.cpu_seconds is not None:
            names.append(LIMIT_CPU)
        if self.memory_bytes is not None:
            names.append(LIMIT_MEMORY)
        return tuple(names)

    def preexec(self) -> Callable[[], None] | None:
        """Return a callable that applies the ceilings inside the forked child."""

        if _resource is None or (self.cpu_seconds is None and self.memory_bytes is None):
            return None
        cpu_seconds = self.cpu_seconds
        memory_bytes = self.memory_bytes
        resource_module = _resource

        def _apply() -> None:
            if cpu_seconds is not None:
                _, hard = resource_module.getrlimit(resource_module.RLIMIT_CPU)
                # One extra second between SIGXCPU at the soft limit and SIGKILL at the hard one.
                ceiling = cpu_seconds + 1
                if hard != resource_module.RLIM_INFINITY:
                    ceiling = min(ceiling, hard)
                resource_module.setrlimit(
                    resource_module.RLIMIT_CPU, (min(cpu_seconds, ceiling), ceiling)
                )
            if memory_bytes is not None:
                resource_module.setrlimit(
                    resource_module.RLIMIT_AS, (memory_bytes, memory_bytes)
                )

        return _apply


def plan_child_limits(limits: ResourceLimits) -> ChildLimits:
    """
    Translate configured ceilings into what this host can actually enforce.

    A ceiling is dropped when the platform lacks ``resource`` or the current hard
    limit is already lower than the requested value, so ``enforced`` never claims
    a limit the child did not get.
    """

    if _resource is None:
        return ChildLimits()

    cpu_seconds: int | None = None
    if limits.cpu_seconds > 0 and _can_lower(_resource.RLIMIT_CPU, limits.cpu_seconds):
        cpu_seconds = limits.cpu_seconds

    memory_bytes: int | None = None
    rlimit_as = getattr(_resource, "RLIMIT_AS", None)
    requested_bytes = limits.memory_mb * _BYTES_PER_MB
    if limits.memory_mb > 0 and rlimit_as is not None and _can_lower(rlimit_as, requested_bytes):
        memory_bytes = requested_bytes

    return ChildLimits(cpu_seconds=cpu_seconds, memory_bytes=memory_bytes)


def gomaxprocs_for(limits: ResourceLimits) -> str:
    """``GOMAXPROCS`` value derived from the CPU ceiling and the host's core count."""

    cores = os.cpu_count() or 1
    if limits.cpu_seconds <= 0:
        return str(cores)
    return str(max(1, min(cores, limits.cpu_seconds)))


def exceeded_resource_limit(
    exit_code: int | None,
    stderr: bytes,
    enforced: tuple[str, ...],
    *,
    cpu_exhausted: bool = False,
) -> bool:
    """
    Whether a finished child died because of one of its enforced ceilings.

    ``SIGXCPU`` is conclusive. A plain ``SIGKILL`` is only blamed on the CPU ceiling
    when ``cpu_exhausted`` says the tree was seen using most of its CPU allowance.
    """

    if exit_code is None:
        return False
    if LIMIT_CPU in enforced:
        sigxcpu = getattr(signal, "SIGXCPU", None)
        if sigxcpu is not None and exit_code == -int(sigxcpu):
            return True
        tail = _tail(stderr)
        if exit_code != 0 and _CPU_SIGNAL_RE.search(tail):
            return True
        killed = exit_code == -int(signal.SIGKILL) or (
            exit_code != 0 and _KILLED_RE.search(tail) is not None
        )
        if killed and cpu_exhausted:
            return True
    if LIMIT_MEMORY in enforced and exit_code != 0:
        return _OUT_OF_MEMORY_RE.search(_tail(stderr)) is not None
    return False


def _can_lower(kind: int, requested: int) -> bool:
    if _resource is None:
        return False
    try:
        _, hard = _resource.getrlimit(kind)
    except (OSError, ValueError):
        return False
    return hard == _resource.RLIM_INFINITY or hard >= requested


def _tail(stderr: bytes, size: int = 8192) -> str:
    return stderr[-size:].decode("utf-8", errors="replace")


__all__ = [
    "LIMIT_CPU",
    "LIMIT_MEMORY",
    "ChildLimits",
    "exceeded_resource_limit",
    "gomaxprocs_for",
    "plan_child_limits",
]
