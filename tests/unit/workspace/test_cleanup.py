"""Unit tests for scoped cleanup of execution resources."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from godev_sandbox.domain.models import Workspace, WorkspaceOrigin
from godev_sandbox.workspace.cleanup import CleanupScope
from godev_sandbox.workspace.workspace_manager import WorkspaceManager


def test_actions_run_in_lifo_order_on_exit() -> None:
    order: list[str] = []
    with CleanupScope() as scope:
        scope.callback("first", lambda: order.append("first"))
        scope.callback("second", lambda: order.append("second"))
        assert scope.pending == ("first", "second")

    assert order == ["second", "first"]
    assert scope.pending == ()


def test_failing_action_does_not_stop_others_or_mask_block_error() -> None:
    order: list[str] = []

    def broken() -> None:
        raise OSError("disk gone")

    with pytest.raises(KeyError, match="original"):
        with CleanupScope() as scope:
            scope.callback("a", lambda: order.append("a"))
            scope.callback("broken", broken)
            raise KeyError("original")

    assert order == ["a"]
    assert [name for name, _ in scope.failures] == ["broken"]


def test_closed_scope_rejects_new_actions() -> None:
    scope = CleanupScope()
    scope.close()
    with pytest.raises(RuntimeError, match="closed"):
        scope.callback("late", lambda: None)


def test_sync_close_refuses_coroutine_actions() -> None:
    async def release() -> None:
        return None

    scope = CleanupScope()
    scope.callback("async", release)
    scope.close()

    assert len(scope.failures) == 1
    assert isinstance(scope.failures[0][1], TypeError)


async def test_async_scope_awaits_coroutine_actions() -> None:
    released: list[str] = []

    async def release() -> None:
        await asyncio.sleep(0)
        released.append("done")

    async with CleanupScope() as scope:
        scope.callback("async", release)

    assert released == ["done"]


async def test_workspace_released_when_block_is_cancelled(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path / "temp", prefix="godev-test-")
    workspace = manager.create_ephemeral()
    started = asyncio.Event()

    async def guarded() -> None:
        async with CleanupScope() as scope:
            scope.register_workspace(workspace, manager)
            started.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(guarded())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not workspace.root.exists()


def test_register_workspace_skips_caller_owned_and_retained(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path / "temp", prefix="godev-test-")
    project = tmp_path / "project"
    project.mkdir()
    existing = Workspace(root=project, origin=WorkspaceOrigin.EXISTING, caller_owned=True)
    retained = manager.create_ephemeral()

    with CleanupScope() as scope:
        assert not scope.register_workspace(existing, manager)
        assert not scope.register_workspace(retained, manager, retain=True)
        assert scope.pending == ()

    assert project.is_dir()
    assert retained.root.is_dir()


async def test_async_scope_runs_plain_actions_off_the_loop_thread() -> None:
    loop_thread = threading.get_ident()
    seen: list[int] = []

    async with CleanupScope() as scope:
        scope.callback("blocking", lambda: seen.append(threading.get_ident()))

    assert len(seen) == 1
    assert seen[0] != loop_thread
