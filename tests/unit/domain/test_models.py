"""Unit tests for core domain models."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest

from tdd_orchestrator.domain import ids, models
from tdd_orchestrator.domain.models import (
    AcceptanceCriterion,
    AttentionWindow,
    AuditEntry,
    EscalationReason,
    EscalationRecord,
    HandoffReport,
    Phase,
    Severity,
    StreamCursor,
    Ticket,
    WindowCloseReason,
    WorkItem,
    WorkItemStatus,
)

from tests.unit import BASE_TS, make_work_item, ticket_payload


def test_ticket_accepts_camel_case_and_tags_plain_criteria() -> None:
    ticket = Ticket.from_dict(ticket_payload("T-7", project_ref="web"))

    assert ticket.id == "T-7"
    assert ticket.project_ref == "web"
    assert [criterion.tag for criterion in ticket.acceptance_criteria] == ["AC-1", "AC-2"]
    assert ticket.acceptance_criteria[0].text == "GET /items returns 200 with a JSON array"


def test_ticket_accepts_snake_case() -> None:
    ticket = Ticket.from_dict(
        {
            "id": "T-8",
            "title": "Delete items",
            "requirement_text": "DELETE /items/{id} removes the item.",
            "acceptance_criteria": [{"text": "returns 204"}],
            "project_ref": "api",
            "constraints": ["no new dependencies"],
        }
    )

    assert ticket.acceptance_criteria == (AcceptanceCriterion(tag="AC-1", text="returns 204"),)
    assert ticket.constraints == ("no new dependencies",)


@pytest.mark.parametrize(
    ("mutate", "match"),
    [
        (lambda p: p.pop("projectRef"), "project_ref"),
        (lambda p: p.pop("requirementText"), "requirement_text"),
        (lambda p: p.update(priority="high"), "unexpected fields"),
        (lambda p: p.update(title="   "), "Ticket.title"),
        (lambda p: p.update(acceptanceCriteria=["a", {"tag": "ac-1", "text": "b"}]), "unique"),
        (lambda p: p.update(acceptanceCriteria=[7]), "expected string or object"),
    ],
)
def test_ticket_validation_errors(mutate, match: str) -> None:
    payload = ticket_payload()
    mutate(payload)

    with pytest.raises(ValueError, match=match):
        Ticket.from_dict(payload)


def test_work_item_requires_prefixed_id() -> None:
    with pytest.raises(ValueError, match="WorkItem.id"):
        make_work_item(id="T-1")


def test_escalated_item_requires_a_reason() -> None:
    with pytest.raises(ValueError, match="escalation_reason"):
        make_work_item(phase=Phase.ESCALATED, status=WorkItemStatus.ESCALATED)


def test_work_item_rejects_naive_datetimes_and_negative_counters() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        make_work_item(created_at=datetime(2026, 1, 1))
    with pytest.raises(ValueError, match=r"attempts\.red"):
        make_work_item(attempts={"red": -1})


def test_work_item_json_is_canonical_and_round_trips() -> None:
    item = make_work_item(
        attempts={"refactor": 2},
        red_test_names=("tests/test_a.py::test_ac_1",),
        green_snapshot_ref="wi-x/snap-y",
        stream_epochs={"api/test-output": 1},
    )

    encoded = item.to_json()
    decoded = WorkItem.from_json(encoded)

    assert decoded == item
    assert list(json.loads(encoded)) == sorted(json.loads(encoded))
    assert json.loads(encoded)["created_at"] == "2026-03-02T09:00:00.000000Z"


def test_work_item_helpers() -> None:
    item = make_work_item(attempts={"green": 3})

    assert item.attempt_count(Phase.GREEN) == 3
    assert item.attempt_count(Phase.RED) == 0
    assert not item.is_terminal
    item.phase = Phase.DONE
    assert item.is_terminal
    item.phase = Phase.ABORTED
    assert item.is_terminal


def test_work_item_from_dict_rejects_unknown_fields() -> None:
    data = make_work_item().to_dict()
    data["owner"] = "someone"

    with pytest.raises(ValueError, match="unexpected fields"):
        WorkItem.from_dict(data)


def test_severity_ranks_are_ordered() -> None:
    ranks = [severity.rank for severity in Severity]

    assert ranks == sorted(ranks)
    assert Severity.CRITICAL.rank > Severity.HIGH.rank > Severity.INFO.rank


def test_escalation_record_and_handoff_report_round_trip() -> None:
    record = EscalationRecord(
        id=ids.generate_escalation_id(),
        work_item_id=ids.generate_work_item_id(),
        phase=Phase.REFACTOR,
        reason=EscalationReason.REGRESSION_LOOP,
        created_at=BASE_TS,
        snapshot_ref="wi-x/snap-y",
        recent_signals=("api/test-output@0:10 test_run_summary: total=2 passed=1 failed=1",),
        detail="3 refactor attempts",
    )
    report = HandoffReport(
        window_id=ids.generate_window_id(),
        started_at=BASE_TS,
        closed_at=BASE_TS + timedelta(hours=2),
        close_reason=WindowCloseReason.QUEUE_EMPTY,
        budget_seconds=14_400.0,
        elapsed_seconds=7_200.0,
        wall_clock_seconds=7_200.0,
        completed=("wi-a",),
        pending_escalations=(record,),
    )

    assert HandoffReport.from_json(report.to_json()) == report


def test_handoff_report_rejects_foreign_escalations() -> None:
    with pytest.raises(ValueError, match="must be EscalationRecord"):
        HandoffReport(
            window_id="win-1",
            started_at=BASE_TS,
            closed_at=BASE_TS,
            close_reason=WindowCloseReason.PAUSED,
            budget_seconds=1.0,
            elapsed_seconds=0.0,
            wall_clock_seconds=0.0,
            pending_escalations=("esc-1",),  # type: ignore[arg-type]
        )


def test_attention_window_remaining_seconds() -> None:
    window = AttentionWindow(
        id="win-1", started_at=BASE_TS, budget_seconds=3600, elapsed_seconds=600
    )

    assert window.remaining_seconds == 3000.0
    with pytest.raises(ValueError, match="budget_seconds"):
        AttentionWindow(id="win-2", started_at=BASE_TS, budget_seconds=-1)


def test_audit_entry_allows_missing_from_phase() -> None:
    entry = AuditEntry.from_dict(
        {
            "work_item_id": "wi-1",
            "occurred_at": "2026-03-02T09:00:00Z",
            "from_phase": None,
            "to_phase": "red",
            "signal_id": "intake:T-1",
        }
    )

    assert entry.from_phase is None
    assert entry.occurred_at == BASE_TS


def test_stream_cursor_from_dict_validates_offsets() -> None:
    cursor = StreamCursor.from_dict({"stream_id": "api/test-output", "path": "/l", "offset": 5})

    assert cursor.offset == 5
    assert cursor.inode is None
    with pytest.raises(ValueError, match="StreamCursor.offset"):
        StreamCursor.from_dict({"stream_id": "s", "path": "/l", "offset": -1})


def test_canonical_json_is_compact_and_sorted() -> None:
    assert models.canonical_json({"b": 1, "a": [1, "é"]}) == '{"a":[1,"é"],"b":1}'
