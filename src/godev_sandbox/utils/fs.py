"""
godev-sandbox: filesystem utilities

File: src/godev_sandbox/utils/fs.py

Purpose
- Safe filesystem helpers for workspace roots: creation, contained writes and
  guarded deletion.

Functional requirements
- Writes use temp files in the destination directory and replace in a single step.
- Relative paths that escape a root are rejected before any byte is written.
- Deletion refuses paths outside the owning root.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath

PathLike = str | os.PathLike[str]

__all__ = [
    "PathLike",
    "atomic_write",
    "contained_path",
    "is_within",
    "make_unique_root",
    "safe_delete",
]


def make_unique_root(prefix: str, temp_root: PathLike | None = None) -> Path:
    """Create a fresh, uniquely named directory under ``temp_root`` (host temp when unset)."""

    base = None if temp_root is None else str(Path(temp_root))
    if base is not None:
        Path(base).mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=prefix, dir=base)).resolve()


def contained_path(root: PathLike, relative: str) -> Path:
    """
    Join ``relative`` onto ``root`` and refuse anything that would land outside.

    ``relative`` is interpreted as a POSIX path. Absolute paths, ``..`` segments and
    empty paths raise ``ValueError``.
    """

    normalized = relative.replace("\\", "/").strip()
    pure = PurePosixPath(normalized)
    if not normalized or pure.is_absolute() or normalized.startswith("/"):
        raise ValueError(f"path must be relative to the workspace root: {relative!r}")
    if any(part == ".." for part in pure.parts):
        raise ValueError(f"path must not contain '..' segments: {relative!r}")
    if not pure.parts or pure.parts == (".",):
        raise ValueError(f"path must name a file: {relative!r}")

    root_path = Path(root).resolve()
    candidate = root_path.joinpath(*pure.parts)
    if not _is_relative_to(candidate, root_path):
        raise ValueError(f"path escapes the workspace root: {relative!r}")
    return candidate


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    A temp file is created beside the target, written, flushed and moved into
    place with ``os.replace``, so an existing file is replaced whole or not at all.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
        os.chmod(temp_path, 0o644)
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except (FileNotFoundError, RuntimeError):
        return False
    if not resolved_parent.is_dir():
        return False

    try:
        resolved_child = Path(child).resolve(strict=True)
    except (FileNotFoundError, RuntimeError):
        return False

    return _is_relative_to(resolved_child, resolved_parent)


def safe_delete(path: PathLike, container: PathLike) -> None:
    """
    Delete ``path`` only if it lies inside ``container``.

    Symlinks are unlinked without traversing into their targets. A missing
    ``path`` is not an error.
    """

    boundary = Path(container).resolve(strict=True)
    if not boundary.is_dir():
        raise NotADirectoryError(f"{boundary!s} is not a directory")

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return

    parent_resolved = target.parent.resolve(strict=True)
    candidate = parent_resolved / target.name
    if candidate == boundary or not _is_relative_to(candidate, boundary):
        raise ValueError(f"refusing to delete path outside {boundary!s}: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
