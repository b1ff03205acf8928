"""Working-tree snapshots used to roll REFACTOR regressions back to GREEN."""

from tdd_orchestrator.workspace.snapshots import (
    DEFAULT_IGNORE,
    DirectorySnapshotStore,
    SnapshotError,
    SnapshotInfo,
)

__all__ = ["DEFAULT_IGNORE", "DirectorySnapshotStore", "SnapshotError", "SnapshotInfo"]
