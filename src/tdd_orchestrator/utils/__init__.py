"""Utility exports for filesystem and concurrency helpers."""

from tdd_orchestrator.utils.concurrency import (
    CancellationToken,
    run_with_timeout,
    sleep_or_cancel,
)
from tdd_orchestrator.utils.fs import atomic_write, copy_tree, is_within, safe_delete

__all__ = [
    "CancellationToken",
    "atomic_write",
    "copy_tree",
    "is_within",
    "run_with_timeout",
    "safe_delete",
    "sleep_or_cancel",
]
