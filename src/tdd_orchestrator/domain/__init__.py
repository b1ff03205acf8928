"""Domain types shared across planes: tickets, work items, signals, escalations.

The domain layer is free of IO side effects; persistence and supervision build
on it, never the other way round.
"""

from __future__ import annotations

from tdd_orchestrator.domain.models import (
    AcceptanceCriterion,
    AttentionWindow,
    AuditEntry,
    EscalationReason,
    EscalationRecord,
    HandoffReport,
    Phase,
    PolicyAction,
    Severity,
    StreamCursor,
    Ticket,
    WindowCloseReason,
    WindowStatus,
    WorkItem,
    WorkItemStatus,
)
from tdd_orchestrator.domain.signals import Signal, SignalType

__all__ = [
    "AcceptanceCriterion",
    "AttentionWindow",
    "AuditEntry",
    "EscalationReason",
    "EscalationRecord",
    "HandoffReport",
    "Phase",
    "PolicyAction",
    "Severity",
    "StreamCursor",
    "Signal",
    "SignalType",
    "Ticket",
    "WindowCloseReason",
    "WindowStatus",
    "WorkItem",
    "WorkItemStatus",
]
