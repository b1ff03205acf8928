"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the repo root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".tddo/state")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath(".tddo/logs")
SNAPSHOTS_DIR: Final[PurePosixPath] = PurePosixPath(".tddo/snapshots")
HANDOFF_DIR: Final[PurePosixPath] = PurePosixPath(".tddo/handoff")
DEFAULT_CONFIG_FILENAME: Final[str] = "orchestrator.toml"

# Canonical log streams tailed for every project.
TEST_OUTPUT_STREAM: Final[str] = "test-output"
DEV_SERVER_STREAM: Final[str] = "dev-server"
REVIEW_STREAM: Final[str] = "review"

# Phase bounds.
DEFAULT_MAX_ATTEMPTS: Final[int] = 10
DEFAULT_MAX_REVIEW_CYCLES: Final[int] = 3
DEFAULT_ATTENTION_BUDGET_SECONDS: Final[int] = 4 * 60 * 60

# Review severities ordered from least to most severe.
SEVERITIES: Final[tuple[str, ...]] = ("info", "low", "medium", "high", "critical")
SEVERITY_RANK: Final[dict[str, int]] = {name: rank for rank, name in enumerate(SEVERITIES)}

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ATTENTION_BUDGET_SECONDS",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_REVIEW_CYCLES",
    "DEV_SERVER_STREAM",
    "HANDOFF_DIR",
    "LOGS_DIR",
    "REVIEW_STREAM",
    "SEVERITIES",
    "SEVERITY_RANK",
    "SNAPSHOTS_DIR",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "TEST_OUTPUT_STREAM",
]
