"""
tdd-orchestrator

Purpose
- Drive tickets through RED -> GREEN -> REFACTOR -> REVIEW -> DONE using only
  evidence parsed from test-runner and dev-server log streams.
- Bound retries, roll back regressions, and escalate to a human when progress
  stalls, inside a fixed unattended-time budget (the attention window).

Import boundary rules
- Importing the package must not load configuration, open the state database,
  or configure logging.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
