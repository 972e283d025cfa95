"""Ephemeral Go workspace materialization with copy, overlay and rollback."""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from godev_sandbox.constants import (
    DEFAULT_WORKSPACE_PREFIX,
    GO_MOD_FILENAME,
    SYNTHESIZED_GO_DIRECTIVE,
    SYNTHESIZED_MODULE_NAME,
    VCS_METADATA_DIRS,
)
from godev_sandbox.domain.errors import MaterializationError
from godev_sandbox.domain.models import Workspace, WorkspaceOrigin
from godev_sandbox.utils.fs import (
    atomic_write,
    contained_path,
    is_within,
    make_unique_root,
    safe_delete,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from godev_sandbox.domain.models import ExecutionPlan, FileSpec

_SECONDS_PER_HOUR = 3600.0


def synthesized_module_descriptor() -> str:
    """Minimal ``go.mod`` written when an operation needs one and none exists."""

    return f"module {SYNTHESIZED_MODULE_NAME}\n\ngo {SYNTHESIZED_GO_DIRECTIVE}\n"


class WorkspaceManager:
    """
    Create, populate and release per-execution workspace roots.

    Every ephemeral root is a fresh ``mkdtemp`` directory named with the configured
    prefix, so concurrent executions never share one. Caller-owned roots are only
    ever wrapped, never written or removed here.
    """

    def __init__(
        self,
        temp_root: str | Path | None = None,
        *,
        prefix: str = DEFAULT_WORKSPACE_PREFIX,
        logger: structlog.stdlib.BoundLogger | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        if not prefix or os.sep in prefix or "/" in prefix:
            raise ValueError("prefix must be a non-empty file name fragment")
        self._temp_root = (
            Path(temp_root).expanduser().resolve() if temp_root not in (None, "") else None
        )
        self._prefix = prefix
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._now_fn: Callable[[], float] = now_fn if now_fn is not None else time.time

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def temp_root(self) -> Path:
        if self._temp_root is not None:
            return self._temp_root
        return Path(tempfile.gettempdir()).resolve()

    def create_ephemeral(self, files: Iterable[FileSpec] = ()) -> Workspace:
        """Create a new root and write ``files`` into it."""

        root = self._new_root()
        try:
            self._write_files(root, files)
        except BaseException:
            self._rollback(root)
            raise
        return Workspace(root=root, origin=WorkspaceOrigin.EPHEMERAL, caller_owned=False)

    def copy_project(self, source: str | Path) -> Workspace:
        """
        Copy ``source`` into a new root.

        Regular files keep their permission bits. VCS metadata directories are
        skipped. Symlinks are honoured only when they resolve inside ``source``;
        others are left out and logged.
        """

        try:
            src_root = Path(source).resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise MaterializationError(f"project path cannot be resolved: {source}") from exc
        if not src_root.is_dir():
            raise MaterializationError(f"project path is not a directory: {source}")

        root = self._new_root()
        try:
            self._copy_tree(src_root, root)
        except BaseException:
            self._rollback(root)
            raise
        return Workspace(root=root, origin=WorkspaceOrigin.EPHEMERAL, caller_owned=False)

    def overlay(self, workspace: Workspace, files: Iterable[FileSpec]) -> None:
        """Overwrite ``files`` inside an ephemeral workspace; each write replaces the whole file."""

        if workspace.caller_owned:
            raise MaterializationError("refusing to overlay files onto a caller-owned project")
        self._write_files(workspace.root, files)

    def materialize(self, plan: ExecutionPlan) -> Workspace:
        """Produce the workspace ``plan`` describes, removing any partial root on failure."""

        if plan.origin is WorkspaceOrigin.EXISTING:
            existing = plan.existing_root
            if existing is None or not existing.is_dir():
                raise MaterializationError(f"project directory is not available: {existing}")
            self._logger.debug(
                "workspace_existing_root",
                root=str(existing),
                mutates_in_place=plan.mutates_in_place,
            )
            return Workspace(root=existing, origin=WorkspaceOrigin.EXISTING, caller_owned=True)

        if plan.source_project is not None:
            workspace = self.copy_project(plan.source_project)
            try:
                self.overlay(workspace, plan.files)
            except BaseException:
                self._rollback(workspace.root)
                raise
        else:
            workspace = self.create_ephemeral(plan.files)

        if plan.requires_module_descriptor:
            try:
                self._ensure_module_descriptor(workspace.root)
            except BaseException:
                self._rollback(workspace.root)
                raise

        self._logger.info(
            "workspace_materialized",
            root=str(workspace.root),
            strategy=plan.strategy.value,
            overlay_files=[spec.path for spec in plan.files],
            copied_project=str(plan.source_project) if plan.source_project else None,
        )
        return workspace

    def release(self, workspace: Workspace) -> None:
        """Delete an ephemeral root. Caller-owned roots are left untouched."""

        if workspace.caller_owned or workspace.origin is WorkspaceOrigin.EXISTING:
            return
        root = workspace.root
        if not root.name.startswith(self._prefix):
            raise ValueError(f"refusing to delete unmanaged directory: {root}")
        if root.exists() or root.is_symlink():
            safe_delete(root, root.parent)
        self._logger.debug("workspace_released", root=str(root))

    def gc(self, max_age_hours: float, dry_run: bool = False) -> tuple[Path, ...]:
        """
        Remove stale ephemeral roots left behind by a crashed host process.

        Only direct children of ``temp_root`` carrying this manager's prefix are
        considered; symlinks are never followed.
        """

        if max_age_hours < 0:
            raise ValueError("max_age_hours must be >= 0")

        base = self.temp_root
        if not base.is_dir():
            return ()

        cutoff = self._now_fn() - max_age_hours * _SECONDS_PER_HOUR
        removed: list[Path] = []
        for candidate in sorted(base.iterdir(), key=lambda path: path.name):
            if not candidate.name.startswith(self._prefix):
                continue
            if candidate.is_symlink() or not candidate.is_dir():
                continue
            try:
                modified = candidate.stat().st_mtime
            except FileNotFoundError:
                continue
            if modified > cutoff:
                continue
            if not dry_run:
                safe_delete(candidate, base)
            removed.append(candidate)

        self._logger.info(
            "workspace_gc",
            temp_root=str(base),
            removed=len(removed),
            dry_run=dry_run,
        )
        return tuple(removed)

    def _new_root(self) -> Path:
        try:
            root = make_unique_root(self._prefix, self._temp_root)
        except OSError as exc:
            raise MaterializationError(f"cannot create workspace root: {exc}") from exc
        self._logger.debug("workspace_root_created", root=str(root))
        return root

    def _write_files(self, root: Path, files: Iterable[FileSpec]) -> None:
        for spec in files:
            try:
                target = contained_path(root, spec.path)
            except ValueError as exc:
                raise MaterializationError(str(exc)) from exc
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                if target.is_symlink() or target.is_dir():
                    raise MaterializationError(
                        f"overlay target is not a regular file: {spec.path}"
                    )
                atomic_write(target, spec.content)
            except OSError as exc:
                raise MaterializationError(f"cannot write {spec.path}: {exc}") from exc

    def _copy_tree(self, src_root: Path, dest_root: Path) -> None:
        def _walk_error(error: OSError) -> None:
            raise MaterializationError(f"cannot read project directory: {error}") from error

        for dirpath, dirnames, filenames in os.walk(
            src_root, onerror=_walk_error, followlinks=False
        ):
            current = Path(dirpath)
            relative_dir = current.relative_to(src_root)
            target_dir = dest_root / relative_dir

            kept_dirs: list[str] = []
            for name in sorted(dirnames):
                if name in VCS_METADATA_DIRS:
                    continue
                entry = current / name
                if entry.is_symlink():
                    self._copy_symlink(entry, target_dir / name, src_root)
                    continue
                try:
                    (target_dir / name).mkdir()
                except OSError as exc:
                    raise MaterializationError(
                        f"cannot create directory {relative_dir / name}: {exc}"
                    ) from exc
                kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                entry = current / name
                if entry.is_symlink():
                    self._copy_symlink(entry, target_dir / name, src_root)
                    continue
                try:
                    mode = entry.lstat().st_mode
                except OSError as exc:
                    raise MaterializationError(
                        f"cannot stat {relative_dir / name}: {exc}"
                    ) from exc
                if not stat.S_ISREG(mode):
                    self._logger.debug("workspace_copy_skip_special", path=str(entry))
                    continue
                try:
                    shutil.copy2(entry, target_dir / name, follow_symlinks=False)
                except OSError as exc:
                    raise MaterializationError(
                        f"cannot copy {relative_dir / name}: {exc}"
                    ) from exc

    def _copy_symlink(self, link: Path, destination: Path, src_root: Path) -> None:
        if not is_within(link, src_root):
            self._logger.warning(
                "workspace_copy_skip_escaping_symlink",
                link=str(link),
                source_root=str(src_root),
            )
            return

        resolved = link.resolve(strict=True)
        try:
            if resolved.is_dir():
                # Recreate as a relative link; the target is copied on its own path.
                relative_target = os.path.relpath(resolved, start=link.parent.resolve())
                os.symlink(relative_target, destination, target_is_directory=True)
            elif resolved.is_file():
                shutil.copy2(resolved, destination)
            else:
                self._logger.debug("workspace_copy_skip_special", path=str(link))
        except OSError as exc:
            raise MaterializationError(f"cannot copy symlink {link.name}: {exc}") from exc

    def _ensure_module_descriptor(self, root: Path) -> None:
        descriptor = root / GO_MOD_FILENAME
        if descriptor.exists():
            return
        try:
            atomic_write(descriptor, synthesized_module_descriptor())
        except OSError as exc:
            raise MaterializationError(f"cannot write {GO_MOD_FILENAME}: {exc}") from exc
        self._logger.debug("workspace_module_descriptor_synthesized", root=str(root))

    def _rollback(self, root: Path) -> None:
        try:
            if root.exists() or root.is_symlink():
                safe_delete(root, root.parent)
        except (OSError, ValueError) as exc:
            self._logger.error("workspace_rollback_failed", root=str(root), error=str(exc))
            return
        self._logger.debug("workspace_rolled_back", root=str(root))


__all__ = ["WorkspaceManager", "synthesized_module_descriptor"]
