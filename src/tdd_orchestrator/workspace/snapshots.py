"""Directory-copy snapshots of a project working tree for REFACTOR rollback."""

from __future__ import annotations

import json
import re
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

from tdd_orchestrator.domain.ids import generate_snapshot_id
from tdd_orchestrator.domain.models import utc_now
from tdd_orchestrator.utils.fs import atomic_write, copy_tree, is_within, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

DEFAULT_IGNORE: Final[tuple[str, ...]] = (
    ".git",
    ".tddo",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    "node_modules",
)
_METADATA_FILE: Final[str] = ".tddo-snapshot.json"
_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


class SnapshotError(RuntimeError):
    """Raised when a snapshot reference cannot be captured or restored."""


@dataclass(frozen=True, slots=True)
class SnapshotInfo:
    ref: str
    work_item_id: str
    source_root: Path
    created_at: datetime


class DirectorySnapshotStore:
    """
    Keep full copies of a project tree under ``snapshot_root``.

    A reference has the form ``<work_item_id>/<snapshot_id>``. Restoring
    replaces everything in the project root except the ignored entries, so
    version-control metadata and orchestrator state survive a rollback.
    """

    def __init__(
        self,
        snapshot_root: str | Path,
        *,
        ignore: Sequence[str] = DEFAULT_IGNORE,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(snapshot_root).expanduser().resolve(strict=False)
        self._ignore = tuple(ignore)
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else utc_now
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    def capture(self, project_root: str | Path, work_item_id: str) -> str:
        source = Path(project_root).expanduser().resolve(strict=True)
        if not source.is_dir():
            raise NotADirectoryError(f"{source} is not a directory")
        work_item = _validate_identifier(work_item_id, "work_item_id")
        snapshot_id = generate_snapshot_id()
        ref = f"{work_item}/{snapshot_id}"

        with self._lock:
            self._root.mkdir(parents=True, exist_ok=True)
            ignore = self._ignore
            if is_within(self._root, source):
                ignore += (self._root.name,)
            target = self._root / work_item / snapshot_id
            files = target / "tree"
            copy_tree(source, files, ignore=ignore)
            atomic_write(
                target / _METADATA_FILE,
                json.dumps(
                    {
                        "ref": ref,
                        "work_item_id": work_item,
                        "source_root": source.as_posix(),
                        "created_at": self._now_fn().isoformat(),
                    },
                    sort_keys=True,
                    indent=2,
                )
                + "\n",
            )
        return ref

    def restore(self, ref: str, project_root: str | Path) -> None:
        files = self._tree_for(ref)
        destination = Path(project_root).expanduser().resolve(strict=True)
        with self._lock:
            for entry in sorted(destination.iterdir()):
                if entry.name in self._ignore or is_within(self._root, entry):
                    continue
                safe_delete(entry, destination)
            shutil.copytree(files, destination, symlinks=True, dirs_exist_ok=True)

    def info(self, ref: str) -> SnapshotInfo:
        metadata_path = self._tree_for(ref).parent / _METADATA_FILE
        try:
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SnapshotError(f"unreadable snapshot metadata for {ref!r}: {exc}") from exc
        return SnapshotInfo(
            ref=str(raw["ref"]),
            work_item_id=str(raw["work_item_id"]),
            source_root=Path(str(raw["source_root"])),
            created_at=datetime.fromisoformat(str(raw["created_at"])),
        )

    def exists(self, ref: str) -> bool:
        try:
            self._tree_for(ref)
        except SnapshotError:
            return False
        return True

    def discard(self, work_item_id: str) -> int:
        """Delete every snapshot of ``work_item_id``; return how many were removed."""

        work_item = _validate_identifier(work_item_id, "work_item_id")
        directory = self._root / work_item
        with self._lock:
            if not directory.is_dir():
                return 0
            count = sum(1 for child in directory.iterdir() if child.is_dir())
            safe_delete(directory, self._root)
        return count

    def _tree_for(self, ref: str) -> Path:
        parts = ref.split("/")
        if len(parts) != 2:
            raise SnapshotError(f"malformed snapshot ref: {ref!r}")
        try:
            work_item = _validate_identifier(parts[0], "work_item_id")
            snapshot_id = _validate_identifier(parts[1], "snapshot_id")
        except ValueError as exc:
            raise SnapshotError(str(exc)) from exc
        files = self._root / work_item / snapshot_id / "tree"
        if not files.is_dir():
            raise SnapshotError(f"unknown snapshot ref: {ref!r}")
        return files


def _validate_identifier(value: str, field_name: str) -> str:
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    if value in {".", ".."}:
        raise ValueError(f"{field_name} must not be '.' or '..'")
    if _SAFE_ID_PATTERN.fullmatch(value) is None:
        raise ValueError(f"{field_name} contains unsupported characters: {value!r}")
    return value


__all__ = [
    "DEFAULT_IGNORE",
    "DirectorySnapshotStore",
    "SnapshotError",
    "SnapshotInfo",
]
