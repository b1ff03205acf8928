"""
tdd-orchestrator persistence layer.

SQLite-backed state database and the repositories the control plane, the
scheduler and the CLI share. Every process opens its own short-lived
connections; WAL mode keeps readers unblocked while a window runs.
"""

from tdd_orchestrator.persistence.repositories import (
    AttentionWindowRepo,
    AuditRepo,
    ControlRequest,
    ControlRequestRepo,
    CursorRepo,
    EscalationRepo,
    WorkItemRepo,
)
from tdd_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "AttentionWindowRepo",
    "AuditRepo",
    "ControlRequest",
    "ControlRequestRepo",
    "CursorRepo",
    "EscalationRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "WorkItemRepo",
]
