"""Control-plane public API."""

from godev_sandbox.control_plane.controller import (
    ExecutionController,
    ExecutionState,
    ExecutionTrace,
)
from godev_sandbox.control_plane.normalizer import (
    decode_stream,
    failure_result,
    normalize,
    skipped_result,
)

__all__ = [
    "ExecutionController",
    "ExecutionState",
    "ExecutionTrace",
    "decode_stream",
    "failure_result",
    "normalize",
    "skipped_result",
]
