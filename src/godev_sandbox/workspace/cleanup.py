"""Scoped release of per-execution resources."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from godev_sandbox.domain.models import WorkspaceOrigin

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from godev_sandbox.domain.models import Workspace
    from godev_sandbox.workspace.workspace_manager import WorkspaceManager


@dataclass(frozen=True, slots=True)
class _Registration:
    name: str
    action: Callable[[], object]


class CleanupScope:
    """
    Run registered release actions in LIFO order when the scope exits.

    Actions are registered at acquisition time, so an exit by return, exception or
    cancellation releases everything acquired so far. A failing action is logged
    and the remaining actions still run; release errors never replace the outcome
    of the guarded block.

    Usable as ``with`` (synchronous actions only) or ``async with`` (actions may be
    coroutine functions; plain callables run on a worker thread so a slow delete does
    not hold up the event loop).
    """

    def __init__(self, *, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._actions: list[_Registration] = []
        self._closed = False
        self._failures: list[tuple[str, BaseException]] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(item.name for item in self._actions)

    @property
    def failures(self) -> tuple[tuple[str, BaseException], ...]:
        return tuple(self._failures)

    def callback(self, name: str, action: Callable[[], object]) -> None:
        """Register ``action`` to run on exit."""

        if self._closed:
            raise RuntimeError("cleanup scope already closed")
        self._actions.append(_Registration(name=name, action=action))

    def register_workspace(
        self,
        workspace: Workspace,
        manager: WorkspaceManager,
        *,
        retain: bool = False,
    ) -> bool:
        """
        Register deletion of ``workspace`` unless it is caller-owned or retained.

        Returns whether a deletion was registered.
        """

        if workspace.caller_owned or workspace.origin is WorkspaceOrigin.EXISTING:
            return False
        if retain:
            self._logger.info("workspace_retained", root=str(workspace.root))
            return False
        self.callback(f"workspace:{workspace.root}", lambda: manager.release(workspace))
        return True

    def close(self) -> None:
        """Run all pending synchronous actions now."""

        while self._actions:
            registration = self._actions.pop()
            try:
                result = registration.action()
                if inspect.isawaitable(result):
                    _close_awaitable(result)
                    raise TypeError(
                        f"async release action {registration.name!r} needs 'async with'"
                    )
            except Exception as exc:  # noqa: BLE001 - release failures are reported, not raised.
                self._record_failure(registration.name, exc)
        self._closed = True

    async def aclose(self) -> None:
        """Run all pending actions now, awaiting coroutine actions."""

        while self._actions:
            registration = self._actions.pop()
            try:
                if inspect.iscoroutinefunction(registration.action):
                    result = registration.action()
                else:
                    result = await asyncio.to_thread(registration.action)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - release failures are reported, not raised.
                self._record_failure(registration.name, exc)
        self._closed = True

    def __enter__(self) -> CleanupScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> CleanupScope:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _record_failure(self, name: str, exc: BaseException) -> None:
        self._failures.append((name, exc))
        self._logger.error("cleanup_action_failed", action=name, error=str(exc))


def _close_awaitable(awaitable: object) -> None:
    close = getattr(awaitable, "close", None)
    if callable(close):
        close()


__all__ = ["CleanupScope"]
