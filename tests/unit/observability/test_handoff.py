"""Handoff report rendering tests."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from tdd_orchestrator.domain.models import (
    EscalationReason,
    EscalationRecord,
    HandoffReport,
    Phase,
    WindowCloseReason,
)
from tdd_orchestrator.observability.handoff import HandoffRenderer, format_duration

from tests.unit import BASE_TS

if TYPE_CHECKING:
    from pathlib import Path


def _report(**overrides: object) -> HandoffReport:
    fields: dict[str, object] = {
        "window_id": "win-01J0000000000000000000000",
        "started_at": BASE_TS,
        "closed_at": BASE_TS + timedelta(hours=3),
        "close_reason": WindowCloseReason.BUDGET_EXHAUSTED,
        "budget_seconds": 14_400.0,
        "elapsed_seconds": 7_200.0,
        "wall_clock_seconds": 10_800.0,
    }
    fields.update(overrides)
    return HandoffReport(**fields)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (0, "0s"),
        (-3, "0s"),
        (59.4, "59s"),
        (90, "1m30s"),
        (5400.0, "1h30m"),
        (7200, "2h00m"),
    ],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


def test_write_produces_json_and_markdown(tmp_path: Path) -> None:
    record = EscalationRecord(
        id="esc-01J0000000000000000000000",
        work_item_id="wi-01J0000000000000000000000",
        phase=Phase.REFACTOR,
        reason=EscalationReason.REGRESSION_LOOP,
        created_at=BASE_TS + timedelta(hours=1),
        snapshot_ref="wi-01J0000000000000000000000/snap-1",
        recent_signals=("api/test-output@0:10 test_run_summary: total=2 passed=1 failed=1",),
        detail="3 refactor attempts regressed",
    )
    report = _report(
        completed=("wi-done",),
        pending_escalations=(record,),
        remaining_queue=("wi-next",),
    )
    renderer = HandoffRenderer(tmp_path / "handoff")

    artifacts = renderer.write(report)

    assert artifacts.json_path == tmp_path / "handoff" / f"{report.window_id}.json"
    assert artifacts.markdown_path.name == f"{report.window_id}.md"
    assert HandoffReport.from_dict(json.loads(artifacts.json_path.read_text("utf-8"))) == report

    markdown = artifacts.markdown_path.read_text("utf-8")
    assert markdown.startswith(f"# Handoff: {report.window_id}\n")
    assert "- Active time: 2h00m of 4h00m budget (3h00m wall clock)" in markdown
    assert "(budget_exhausted)" in markdown
    assert "## Completed (1)\n- wi-done\n" in markdown
    assert "### wi-01J0000000000000000000000: regression_loop" in markdown
    assert "- Snapshot: `wi-01J0000000000000000000000/snap-1`" in markdown
    assert "  - `api/test-output@0:10 test_run_summary: total=2 passed=1 failed=1`" in markdown
    assert "## Remaining queue (1)\n- wi-next\n" in markdown


def test_empty_sections_render_none() -> None:
    markdown = HandoffRenderer("unused").render_markdown(
        _report(close_reason=WindowCloseReason.QUEUE_EMPTY)
    )

    assert "## Pending escalations (0)\n- none\n" in markdown
    assert "## Aborted (0)\n- none\n" in markdown
    assert "## Paused (0)\n- none\n" in markdown


def test_rewrite_replaces_previous_files(tmp_path: Path) -> None:
    renderer = HandoffRenderer(tmp_path)
    renderer.write(_report())

    artifacts = renderer.write(_report(completed=("wi-a", "wi-b")))

    assert json.loads(artifacts.json_path.read_text("utf-8"))["completed"] == ["wi-a", "wi-b"]
    assert sorted(path.name for path in tmp_path.iterdir()) == [
        "win-01J0000000000000000000000.json",
        "win-01J0000000000000000000000.md",
    ]
