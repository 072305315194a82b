"""
merge-orchestrator — filesystem utilities

File: src/merge_orchestrator/utils/fs.py

Purpose
- Atomic writes, guarded deletion, and the per-candidate scratch space that
  every orchestration run releases when it ends.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Deletion refuses paths outside the configured scratch root.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import re
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_DIGEST_CHARS = 12


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` so readers see either the old or the new content.

    The parent directory must already exist. The temp file lives beside the
    target so ``os.replace`` never crosses a filesystem boundary.
    """

    destination = Path(path)
    directory = destination.parent.resolve(strict=True)
    if not directory.is_dir():
        raise NotADirectoryError(f"{directory!s} is not a directory")
    content = data if isinstance(data, bytes) else data.encode(encoding)

    handle = tempfile.NamedTemporaryFile(
        mode="wb", dir=directory, prefix=f".{destination.name}.", suffix=".tmp", delete=False
    )
    staged = Path(handle.name)
    try:
        with handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        staged.replace(destination)
    except BaseException:
        with contextlib.suppress(OSError):
            staged.unlink(missing_ok=True)
        raise


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Remove a file, directory tree or symlink that lives under ``root``.

    Containment is checked on the link itself and, for non-links, on what it
    resolves to. A symlink is removed without touching its target.
    """

    boundary = Path(root).resolve(strict=True)
    if not boundary.is_dir():
        raise NotADirectoryError(f"{boundary!s} is not a directory")

    victim = Path(path)
    _require_inside(victim.parent.resolve(strict=True) / victim.name, boundary, victim)
    if victim.is_symlink():
        victim.unlink()
    elif victim.is_dir():
        _require_inside(victim.resolve(strict=True), boundary, victim)
        shutil.rmtree(victim)
    else:
        _require_inside(victim.resolve(strict=True), boundary, victim)
        victim.unlink()


class ScratchSpace:
    """Per-candidate working directories under a single root.

    The orchestrator allocates a directory when a run starts and releases it
    when the run ends, whether or not the cleanup action ran. ``release`` is
    idempotent.

    Directory names are a readable slug of the candidate id plus a digest of
    the raw id, so ids that sanitize to the same slug never share a directory.
    """

    def __init__(self, root: PathLike) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, candidate_id: str) -> Path:
        slug = _safe_name(candidate_id)
        digest = hashlib.sha256(candidate_id.encode("utf-8")).hexdigest()[:_DIGEST_CHARS]
        return self._root / f"{slug}-{digest}"

    def allocate(self, candidate_id: str) -> Path:
        directory = self.path_for(candidate_id)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def exists(self, candidate_id: str) -> bool:
        return self.path_for(candidate_id).exists()

    def write(self, candidate_id: str, name: str, data: bytes | str) -> Path:
        directory = self.allocate(candidate_id)
        target = directory / _safe_name(name)
        atomic_write(target, data)
        return target

    def release(self, candidate_id: str) -> bool:
        """Remove the candidate's directory. Returns ``True`` when something was deleted."""

        directory = self.path_for(candidate_id)
        if not directory.exists() and not directory.is_symlink():
            return False
        safe_delete(directory, self._root)
        return True


def _safe_name(raw: str) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("scratch name must be a non-empty string")
    cleaned = _UNSAFE_NAME_CHARS.sub("_", raw.strip()).strip(".")
    if not cleaned:
        raise ValueError(f"scratch name {raw!r} has no usable characters")
    return cleaned


def _require_inside(location: Path, boundary: Path, original: Path) -> None:
    if location == boundary or boundary not in location.parents:
        raise ValueError(f"refusing to delete path outside scratch root: {original!s}")


__all__ = [
    "ScratchSpace",
    "atomic_write",
    "safe_delete",
]
