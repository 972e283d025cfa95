"""Utility exports for filesystem and concurrency helpers."""

from godev_sandbox.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)
from godev_sandbox.utils.fs import (
    atomic_write,
    contained_path,
    is_within,
    make_unique_root,
    safe_delete,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "contained_path",
    "is_within",
    "make_unique_root",
    "run_with_timeout",
    "safe_delete",
]
