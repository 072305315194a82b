"""
merge-orchestrator — unit tests for filesystem utilities

File: tests/unit/utils/test_fs.py

Purpose
- Validate atomic writes, guarded deletion, and per-candidate scratch space.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from merge_orchestrator.utils.fs import ScratchSpace, atomic_write, safe_delete


def test_atomic_write_replaces_content_without_temp_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "summary.json"

    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_bytes() == b"second"
    assert sorted(item.name for item in tmp_path.iterdir()) == ["summary.json"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.txt", "x")


def test_safe_delete_removes_files_and_directories(tmp_path: Path) -> None:
    file_path = tmp_path / "note.txt"
    file_path.write_text("x", encoding="utf-8")
    directory = tmp_path / "nested"
    (directory / "deeper").mkdir(parents=True)

    safe_delete(file_path, tmp_path)
    safe_delete(directory, tmp_path)

    assert not file_path.exists()
    assert not directory.exists()


def test_safe_delete_refuses_paths_outside_root(tmp_path: Path) -> None:
    root = tmp_path / "scratch"
    root.mkdir()
    outside = tmp_path / "keep.txt"
    outside.write_text("x", encoding="utf-8")

    with pytest.raises(ValueError, match="outside scratch root"):
        safe_delete(outside, root)
    with pytest.raises(ValueError, match="outside scratch root"):
        safe_delete(root / ".." / "keep.txt", root)
    with pytest.raises(ValueError, match="outside scratch root"):
        safe_delete(root, root)

    assert outside.exists()


def test_safe_delete_unlinks_symlink_without_touching_target(tmp_path: Path) -> None:
    root = tmp_path / "scratch"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "data.txt").write_text("x", encoding="utf-8")
    link = root / "link"
    link.symlink_to(outside, target_is_directory=True)

    safe_delete(link, root)

    assert not link.exists()
    assert (outside / "data.txt").exists()


def test_scratch_space_lifecycle(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path)

    directory = scratch.allocate("pr-101")
    written = scratch.write("pr-101", "verdict.json", '{"can_merge": true}')

    assert directory == scratch.path_for("pr-101")
    assert directory.parent == tmp_path
    assert directory.name.startswith("pr-101-")
    assert written.read_text(encoding="utf-8") == '{"can_merge": true}'
    assert scratch.exists("pr-101")

    assert scratch.release("pr-101") is True
    assert scratch.release("pr-101") is False
    assert not scratch.exists("pr-101")


def test_scratch_names_are_sanitized(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path)

    assert scratch.path_for("org/repo#12").name.startswith("org_repo_12-")
    assert scratch.path_for("../escape").parent == tmp_path
    assert scratch.path_for("pr-7") == scratch.path_for("pr-7")
    with pytest.raises(ValueError, match="non-empty"):
        scratch.path_for("  ")
    with pytest.raises(ValueError, match="no usable characters"):
        scratch.path_for("..")


def test_ids_with_the_same_slug_get_separate_directories(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path)

    first = scratch.allocate("org/repo#1")
    second = scratch.allocate("org_repo_1")
    assert first != second

    scratch.write("org_repo_1", "state.json", "{}")
    assert scratch.release("org/repo#1") is True

    assert scratch.exists("org_repo_1")
    assert (second / "state.json").exists()
