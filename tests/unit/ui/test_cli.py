"""In-process CLI tests: exit codes, JSON output, and cross-process control requests."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

import pytest

from tdd_orchestrator.domain import ids
from tdd_orchestrator.domain.models import AttentionWindow, Phase, WorkItemStatus
from tdd_orchestrator.persistence import (
    AttentionWindowRepo,
    ControlRequestRepo,
    EscalationRepo,
    StateDB,
    WorkItemRepo,
)
from tdd_orchestrator.ui.cli import (
    EXIT_INVALID_INPUT,
    EXIT_NO_ACTIVE_SESSION,
    CLIError,
    is_window_alive,
    parse_duration,
    run_cli,
)

from tests.unit import BASE_TS, make_work_item, ticket_payload

if TYPE_CHECKING:
    from pathlib import Path

_CONFIG = """
[paths]
state_db = "state/tddo.sqlite3"

[projects.api]
root = "api"
test_command = ["pytest", "-q"]
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("TDDO_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("NO_COLOR", "1")


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "orchestrator.toml"
    path.write_text(_CONFIG, encoding="utf-8")
    return path


def _db(config_path: Path) -> StateDB:
    return StateDB(config_path.parent / "state" / "tddo.sqlite3")


def _write_ticket(tmp_path: Path, payload: dict[str, object], name: str = "ticket.json") -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    parsed = json.loads(out[-1])
    assert isinstance(parsed, dict)
    return parsed


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [("4h", 14_400.0), ("30m", 1_800.0), ("1h30m", 5_400.0), ("90s", 90.0), ("600", 600.0)],
)
def test_parse_duration(raw: str, seconds: float) -> None:
    assert parse_duration(raw) == seconds


@pytest.mark.parametrize("raw", ["", "soon", "4d", "0", "-5", "0h"])
def test_parse_duration_rejects_bad_input(raw: str) -> None:
    with pytest.raises(CLIError) as excinfo:
        parse_duration(raw)
    assert excinfo.value.exit_code == EXIT_INVALID_INPUT


def test_usage_errors_exit_1_and_help_exits_0(capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["frobnicate"]) == EXIT_INVALID_INPUT
    assert run_cli([]) == EXIT_INVALID_INPUT
    assert run_cli(["--help"]) == 0
    assert "tddo run --budget 4h" in capsys.readouterr().out


def test_enqueue_clear_ticket(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    ticket = _write_ticket(tmp_path, ticket_payload("T-10"))

    code = run_cli(["enqueue", str(ticket), "--config", str(config_path), "--json"])

    assert code == 0
    payload = _json_output(capsys)
    assert payload["accepted"] is True
    work_item = payload["work_item"]
    assert isinstance(work_item, dict)
    assert work_item["phase"] == "red"
    assert work_item["status"] == "queued"
    stored = WorkItemRepo(_db(config_path)).get_by_ticket("T-10")
    assert stored is not None
    assert stored.id == work_item["id"]


def test_enqueue_ambiguous_ticket_exits_1_but_is_stored(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    payload = ticket_payload("T-11")
    payload["acceptanceCriteria"] = ["TBD"]
    ticket = _write_ticket(tmp_path, payload)

    code = run_cli(["enqueue", str(ticket), "--config", str(config_path)])

    assert code == EXIT_INVALID_INPUT
    out = capsys.readouterr().out
    assert "ambiguous" in out
    assert "AC-1: placeholder text" in out
    stored = WorkItemRepo(_db(config_path)).get_by_ticket("T-11")
    assert stored is not None
    assert stored.phase is Phase.ESCALATED


def test_enqueue_rejects_unknown_project_and_bad_files(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    foreign = _write_ticket(tmp_path, ticket_payload("T-12", project_ref="mobile"))
    broken = tmp_path / "broken.json"
    broken.write_text("{nope", encoding="utf-8")

    assert run_cli(["enqueue", str(foreign), "--config", str(config_path)]) == 1
    assert "unknown project 'mobile'; configured: api" in capsys.readouterr().err
    assert run_cli(["enqueue", str(broken), "--config", str(config_path)]) == 1
    assert run_cli(["enqueue", str(tmp_path / "nope.json"), "--config", str(config_path)]) == 1
    assert run_cli(["status", "--config", str(tmp_path / "absent.toml")]) == 1


def test_status_json_reports_counts_and_escalations(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    clear = _write_ticket(tmp_path, ticket_payload("T-20"), "clear.json")
    vague_payload = ticket_payload("T-21")
    vague_payload["acceptanceCriteria"] = ["It should be fast and user-friendly"]
    vague = _write_ticket(tmp_path, vague_payload, "vague.json")
    run_cli(["enqueue", str(clear), "--config", str(config_path)])
    run_cli(["enqueue", str(vague), "--config", str(config_path)])
    capsys.readouterr()

    code = run_cli(["status", "--config", str(config_path), "--json"])

    assert code == 0
    payload = _json_output(capsys)
    assert payload["counts"] == {"escalated": 1, "queued": 1}
    escalations = payload["open_escalations"]
    assert isinstance(escalations, list)
    assert [record["reason"] for record in escalations] == ["ambiguous_requirement"]
    assert payload["active_window"] is None
    assert payload["last_window"] is None


def test_status_on_empty_state_exits_0(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_cli(["status", "--config", str(config_path)]) == 0
    assert "No work items" in capsys.readouterr().out


def test_resume_clears_escalation_and_requeues(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    payload = ticket_payload("T-30")
    payload["acceptanceCriteria"] = ["..."]
    run_cli(["enqueue", str(_write_ticket(tmp_path, payload)), "--config", str(config_path)])
    item = WorkItemRepo(_db(config_path)).get_by_ticket("T-30")
    assert item is not None
    capsys.readouterr()

    code = run_cli(["resume", item.id, "--config", str(config_path), "--json"])

    assert code == 0
    result = _json_output(capsys)
    assert result["cleared_escalations"] == 1
    resumed = WorkItemRepo(_db(config_path)).get(item.id)
    assert resumed is not None
    assert (resumed.phase, resumed.status) == (Phase.RED, WorkItemStatus.QUEUED)
    assert resumed.escalation_reason is None
    assert EscalationRepo(_db(config_path)).list_open() == []


def test_resume_refusals_exit_1(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repo = WorkItemRepo(_db(config_path))
    active = repo.add(make_work_item(status=WorkItemStatus.ACTIVE))
    queued = repo.add(make_work_item(status=WorkItemStatus.QUEUED))

    assert run_cli(["resume", active.id, "--config", str(config_path)]) == 1
    assert "running in an active window" in capsys.readouterr().err
    assert run_cli(["resume", queued.id, "--config", str(config_path)]) == 1
    assert run_cli(["resume", ids.generate_work_item_id(), "--config", str(config_path)]) == 1
    assert run_cli(["resume", "T-1", "--config", str(config_path)]) == 1


def test_pause_and_cancel_without_active_window_exit_2(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    db = _db(config_path)
    item = WorkItemRepo(db).add(make_work_item(status=WorkItemStatus.QUEUED))
    # An open window whose owner is gone does not count as active.
    AttentionWindowRepo(db).open(
        AttentionWindow(id=ids.generate_window_id(), started_at=BASE_TS, budget_seconds=60)
    )

    assert run_cli(["pause", "--config", str(config_path)]) == EXIT_NO_ACTIVE_SESSION
    assert run_cli(["cancel", item.id, "--config", str(config_path)]) == EXIT_NO_ACTIVE_SESSION
    assert "no active attention window" in capsys.readouterr().err


def test_pause_and_cancel_reach_the_live_window(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    db = _db(config_path)
    item = WorkItemRepo(db).add(make_work_item(status=WorkItemStatus.ACTIVE))
    window = AttentionWindowRepo(db).open(
        AttentionWindow(
            id=ids.generate_window_id(),
            started_at=BASE_TS,
            budget_seconds=3600,
            pid=os.getpid(),
        )
    )

    assert run_cli(["pause", "--config", str(config_path)]) == 0
    assert run_cli(["cancel", item.id, "--config", str(config_path)]) == 0
    assert run_cli(["run", "--config", str(config_path)]) == 1
    assert "already running" in capsys.readouterr().err

    pending = ControlRequestRepo(db).pending(window.id)
    assert [(request.kind, request.work_item_id) for request in pending] == [
        ("pause", None),
        ("cancel", item.id),
    ]


def test_cancel_refuses_finished_items(config_path: Path) -> None:
    item = WorkItemRepo(_db(config_path)).add(
        make_work_item(phase=Phase.DONE, status=WorkItemStatus.DONE)
    )

    assert run_cli(["cancel", item.id, "--config", str(config_path)]) == 1


def test_run_requires_projects_and_a_valid_budget(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    bare = tmp_path / "bare.toml"
    bare.write_text("", encoding="utf-8")

    assert run_cli(["run", "--config", str(bare)]) == 1
    assert "no projects configured" in capsys.readouterr().err
    assert run_cli(["run", "--config", str(config_path), "--budget", "forever"]) == 1


def test_is_window_alive_uses_the_owner_pid() -> None:
    window = AttentionWindow(id="win-1", started_at=BASE_TS, budget_seconds=1.0)

    assert not is_window_alive(window)
    window.pid = os.getpid()
    assert is_window_alive(window)
