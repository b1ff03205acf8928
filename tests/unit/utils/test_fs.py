"""Filesystem helper tests: atomic writes, guarded deletes, and tree copies."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tdd_orchestrator.utils.fs import atomic_write, copy_tree, is_within, safe_delete

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "report.json"

    atomic_write(target, "{}\n")
    atomic_write(target, b"[]\n")

    assert target.read_bytes() == b"[]\n"
    assert [path.name for path in target.parent.iterdir()] == ["report.json"]


def test_safe_delete_refuses_paths_outside_the_root(tmp_path: Path) -> None:
    root = tmp_path / "project"
    root.mkdir()
    outside = tmp_path / "keep.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError, match="outside workspace root"):
        safe_delete(outside, root)
    with pytest.raises(ValueError, match="outside workspace root"):
        safe_delete(root, root)
    assert outside.exists()


def test_safe_delete_unlinks_symlinks_without_following(tmp_path: Path) -> None:
    root = tmp_path / "project"
    (root / "sub").mkdir(parents=True)
    target = tmp_path / "elsewhere"
    target.mkdir()
    (target / "data.txt").write_text("x", encoding="utf-8")
    link = root / "link"
    link.symlink_to(target, target_is_directory=True)

    safe_delete(link, root)
    safe_delete(root / "sub", root)

    assert not link.exists()
    assert not (root / "sub").exists()
    assert (target / "data.txt").exists()


def test_copy_tree_skips_ignored_names(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / "node_modules" / "pkg").mkdir(parents=True)
    (source / "app.py").write_text("print(1)\n", encoding="utf-8")

    copied = copy_tree(source, tmp_path / "dst", ignore=("node_modules",))

    assert sorted(path.name for path in copied.iterdir()) == ["app.py"]
    with pytest.raises(FileExistsError):
        copy_tree(source, copied)


def test_is_within(tmp_path: Path) -> None:
    (tmp_path / "a" / "b").mkdir(parents=True)

    assert is_within(tmp_path / "a" / "b", tmp_path)
    assert not is_within(tmp_path, tmp_path / "a")
    assert not is_within(tmp_path / "missing", tmp_path)
