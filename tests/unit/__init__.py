"""Shared deterministic builders for unit tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Final

from tdd_orchestrator.domain import ids
from tdd_orchestrator.domain.models import (
    AcceptanceCriterion,
    Phase,
    Severity,
    WorkItem,
    WorkItemStatus,
)
from tdd_orchestrator.domain.signals import (
    ReviewCompleted,
    ReviewIssue,
    Signal,
    SignalPayload,
    TestCaseResult,
    TestOutcome,
    TestRunSummary,
)
from tdd_orchestrator.persistence.repositories import (
    AttentionWindowRepo,
    AuditRepo,
    ControlRequestRepo,
    CursorRepo,
    EscalationRepo,
    WorkItemRepo,
)
from tdd_orchestrator.persistence.state_db import StateDB

BASE_TS: Final[datetime] = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)
TEST_STREAM: Final[str] = "api/test-output"


def fixed_clock(
    start: datetime = BASE_TS, step_seconds: float = 1.0
) -> Callable[[], datetime]:
    """Return a clock that advances ``step_seconds`` per call."""

    state = {"now": start}

    def clock() -> datetime:
        current = state["now"]
        state["now"] = current + timedelta(seconds=step_seconds)
        return current

    return clock


def make_criteria(count: int = 2) -> tuple[AcceptanceCriterion, ...]:
    return tuple(
        AcceptanceCriterion(tag=f"AC-{index}", text=f"GET /items/{index} returns 200")
        for index in range(1, count + 1)
    )


def make_work_item(
    *,
    project_ref: str = "api",
    ticket_id: str = "T-1",
    criteria: int = 2,
    phase: Phase = Phase.RED,
    status: WorkItemStatus = WorkItemStatus.ACTIVE,
    **overrides: object,
) -> WorkItem:
    fields: dict[str, object] = {
        "id": ids.generate_work_item_id(),
        "ticket_id": ticket_id,
        "title": f"Ticket {ticket_id}",
        "requirement_text": "Expose the items endpoint.",
        "acceptance_criteria": make_criteria(criteria),
        "project_ref": project_ref,
        "phase": phase,
        "status": status,
        "expected_failing_tests": criteria,
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
    }
    fields.update(overrides)
    return WorkItem(**fields)  # type: ignore[arg-type]


def ticket_payload(ticket_id: str = "T-1", *, project_ref: str = "api") -> dict[str, object]:
    return {
        "id": ticket_id,
        "title": "List items",
        "requirementText": "Expose GET /items returning the stored items.",
        "acceptanceCriteria": [
            "GET /items returns 200 with a JSON array",
            {"tag": "AC-2", "text": "GET /items/unknown returns 404"},
        ],
        "projectRef": project_ref,
    }


def summary(
    *,
    passed: int = 0,
    failed: int = 0,
    passing: tuple[str, ...] = (),
    failing: tuple[str, ...] = (),
) -> TestRunSummary:
    """Build a summary; named tests are added on top of the counts they imply."""

    tests = tuple(TestCaseResult(name, TestOutcome.PASSED) for name in passing) + tuple(
        TestCaseResult(name, TestOutcome.FAILED, "assert False") for name in failing
    )
    passed = max(passed, len(passing))
    failed = max(failed, len(failing))
    return TestRunSummary(total=passed + failed, passed=passed, failed=failed, tests=tests)


def review(*severities: str) -> ReviewCompleted:
    return ReviewCompleted(
        issues=tuple(
            ReviewIssue(severity=Severity(value), message=f"{value} finding")
            for value in severities
        )
    )


class SignalFactory:
    """Hand out signals with increasing offsets on one stream."""

    def __init__(self, stream_id: str = TEST_STREAM, *, epoch: int = 0) -> None:
        self.stream_id = stream_id
        self.epoch = epoch
        self._offset = 0
        self._sequence = 0

    def __call__(self, payload: SignalPayload, *, epoch: int | None = None) -> Signal:
        self._offset += 100
        self._sequence += 1
        return Signal(
            stream_id=self.stream_id,
            epoch=self.epoch if epoch is None else epoch,
            offset=self._offset,
            sequence=self._sequence,
            payload=payload,
            observed_at=BASE_TS,
        )


@dataclass(frozen=True, slots=True)
class Stores:
    db: StateDB
    work_items: WorkItemRepo
    windows: AttentionWindowRepo
    escalations: EscalationRepo
    control_requests: ControlRequestRepo
    audit: AuditRepo
    cursors: CursorRepo


def open_stores(path: Path) -> Stores:
    """Open every repository on one fresh state database under ``path``."""

    db = StateDB(path / "state" / "tddo.sqlite3")
    return Stores(
        db=db,
        work_items=WorkItemRepo(db),
        windows=AttentionWindowRepo(db),
        escalations=EscalationRepo(db),
        control_requests=ControlRequestRepo(db),
        audit=AuditRepo(db),
        cursors=CursorRepo(db),
    )


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def _record(self, level: str, event: str, **kwargs: object) -> None:
        self.events.append((level, event, dict(kwargs)))

    def debug(self, event: str, **kwargs: object) -> None:
        self._record("debug", event, **kwargs)

    def info(self, event: str, **kwargs: object) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: object) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: object) -> None:
        self._record("error", event, **kwargs)

    def exception(self, event: str, **kwargs: object) -> None:
        self._record("exception", event, **kwargs)

    def bind(self, **kwargs: object) -> RecordingLogger:
        del kwargs
        return self

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


__all__ = [
    "BASE_TS",
    "TEST_STREAM",
    "RecordingLogger",
    "SignalFactory",
    "Stores",
    "fixed_clock",
    "make_criteria",
    "make_work_item",
    "open_stores",
    "review",
    "summary",
    "ticket_payload",
]
