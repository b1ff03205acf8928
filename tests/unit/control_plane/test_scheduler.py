"""Unit tests for attention-window scheduling."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from tdd_orchestrator.control_plane.scheduler import (
    AttentionWindowScheduler,
    Checkpoint,
    RunnerResult,
    SchedulerSettings,
    select_next,
)
from tdd_orchestrator.domain.models import (
    EscalationReason,
    Phase,
    WindowCloseReason,
    WindowStatus,
    WorkItem,
    WorkItemStatus,
)
from tdd_orchestrator.intake.tickets import enqueue_ticket
from tdd_orchestrator.observability.handoff import HandoffRenderer

from tests.unit import BASE_TS, Stores, make_work_item, open_stores, ticket_payload

if TYPE_CHECKING:
    from pathlib import Path

HOUR = 3600.0


def _queued(stores: Stores, project: str, *, minutes: int = 0, **overrides: object) -> WorkItem:
    item = make_work_item(
        project_ref=project,
        ticket_id=f"{project}-{minutes}",
        status=WorkItemStatus.QUEUED,
        created_at=BASE_TS + timedelta(minutes=minutes),
        **overrides,
    )
    return stores.work_items.add(item)


def _scheduler(
    stores: Stores,
    runner: object,
    *,
    budget: float = 4 * HOUR,
    concurrency: int = 4,
    handoff: HandoffRenderer | None = None,
) -> AttentionWindowScheduler:
    return AttentionWindowScheduler(
        stores.work_items,
        stores.windows,
        stores.escalations,
        stores.control_requests,
        runner,  # type: ignore[arg-type]
        SchedulerSettings(
            budget_seconds=budget,
            max_concurrent_projects=concurrency,
            checkpoint_interval_seconds=0.01,
        ),
        handoff=handoff,
    )


def _completing_runner(stores: Stores, *, active_seconds: float = HOUR):
    started: list[str] = []

    async def runner(item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        assert checkpoint.work_item_id == item.id
        started.append(item.id)
        await asyncio.sleep(0)
        item.phase = Phase.DONE
        item.status = WorkItemStatus.DONE
        stores.work_items.save(item)
        return RunnerResult(work_item=item, active_seconds=active_seconds)

    runner.started = started  # type: ignore[attr-defined]
    return runner


# ----- selection -----


def test_select_next_takes_oldest_item_per_project() -> None:
    queued = WorkItemStatus.QUEUED
    a_new = make_work_item(
        project_ref="a", status=queued, created_at=BASE_TS + timedelta(minutes=5)
    )
    a_old = make_work_item(project_ref="a", status=queued)
    b_old = make_work_item(
        project_ref="b", status=queued, created_at=BASE_TS + timedelta(minutes=1)
    )

    selected = select_next(
        [a_new, b_old, a_old], active_projects=set(), blocked_projects=set(), limit=4
    )

    assert selected == [a_old, b_old]


def test_select_next_skips_active_and_blocked_projects() -> None:
    items = [
        make_work_item(project_ref=project, status=WorkItemStatus.QUEUED)
        for project in ("a", "b", "c")
    ]

    selected = select_next(items, active_projects={"a"}, blocked_projects={"b"}, limit=4)

    assert [item.project_ref for item in selected] == ["c"]


def test_select_next_respects_limit_and_status() -> None:
    items = [
        make_work_item(project_ref="a", status=WorkItemStatus.QUEUED),
        make_work_item(project_ref="b", status=WorkItemStatus.PAUSED),
        make_work_item(project_ref="c", status=WorkItemStatus.QUEUED),
    ]

    assert len(select_next(items, active_projects=set(), blocked_projects=set(), limit=1)) == 1
    assert select_next(items, active_projects=set(), blocked_projects=set(), limit=0) == []
    picked = select_next(items, active_projects=set(), blocked_projects=set(), limit=5)
    assert {item.project_ref for item in picked} == {"a", "c"}


def test_settings_validation() -> None:
    with pytest.raises(ValueError, match="budget_seconds"):
        SchedulerSettings(budget_seconds=-1)
    with pytest.raises(ValueError, match="max_concurrent_projects"):
        SchedulerSettings(budget_seconds=1, max_concurrent_projects=0)


def test_settings_from_config_prefers_explicit_budget() -> None:
    config = {
        "attention": {
            "budget_seconds": 100,
            "max_concurrent_projects": 2,
            "checkpoint_interval_seconds": 0.5,
        }
    }

    assert SchedulerSettings.from_config(config).budget_seconds == 100.0
    assert SchedulerSettings.from_config(config, budget_seconds=7).budget_seconds == 7.0


# ----- windows -----


@pytest.mark.asyncio
async def test_empty_queue_closes_immediately(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    scheduler = _scheduler(stores, _completing_runner(stores))

    report = await scheduler.run_window()

    assert report.close_reason is WindowCloseReason.QUEUE_EMPTY
    assert report.elapsed_seconds == 0.0
    window = stores.windows.get(report.window_id)
    assert window is not None
    assert window.status is WindowStatus.CLOSED
    assert stores.windows.get_report(report.window_id) == report


@pytest.mark.asyncio
async def test_elapsed_time_is_the_sum_of_active_time(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    first = _queued(stores, "a")
    second = _queued(stores, "b", minutes=1)
    runner = _completing_runner(stores)

    report = await _scheduler(stores, runner).run_window()

    assert report.close_reason is WindowCloseReason.QUEUE_EMPTY
    assert report.elapsed_seconds == pytest.approx(2 * HOUR)
    assert set(report.completed) == {first.id, second.id}
    assert report.pending_escalations == ()
    assert report.remaining_queue == ()


@pytest.mark.asyncio
async def test_one_item_per_project_at_a_time(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    _queued(stores, "a")
    _queued(stores, "a", minutes=1)
    running: set[str] = set()
    overlaps: list[str] = []

    async def runner(item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        del checkpoint
        if item.project_ref in running:
            overlaps.append(item.id)
        running.add(item.project_ref)
        await asyncio.sleep(0.02)
        running.discard(item.project_ref)
        item.phase = Phase.DONE
        item.status = WorkItemStatus.DONE
        stores.work_items.save(item)
        return RunnerResult(work_item=item, active_seconds=1.0)

    report = await _scheduler(stores, runner).run_window()

    assert overlaps == []
    assert len(report.completed) == 2


@pytest.mark.asyncio
async def test_budget_exhaustion_escalates_unfinished_item(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    first = _queued(stores, "a")
    second = _queued(stores, "b", minutes=1)

    async def runner(item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        del checkpoint
        item.phase = Phase.GREEN
        stores.work_items.save(item)
        return RunnerResult(work_item=item, active_seconds=HOUR)

    report = await _scheduler(stores, runner, budget=HOUR, concurrency=1).run_window()

    assert report.close_reason is WindowCloseReason.BUDGET_EXHAUSTED
    stored = stores.work_items.get(first.id)
    assert stored is not None
    assert stored.escalation_reason is EscalationReason.ATTENTION_BUDGET_EXPIRED
    assert stored.escalated_from is Phase.GREEN
    assert [record.work_item_id for record in report.pending_escalations] == [first.id]
    assert report.remaining_queue == (second.id,)


@pytest.mark.asyncio
async def test_escalated_project_blocks_its_queue(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    stores.work_items.add(
        make_work_item(
            project_ref="a",
            phase=Phase.ESCALATED,
            status=WorkItemStatus.ESCALATED,
            escalation_reason=EscalationReason.CANNOT_ACHIEVE_GREEN,
            escalated_from=Phase.GREEN,
        )
    )
    blocked = _queued(stores, "a", minutes=1)
    free = _queued(stores, "b", minutes=2)
    runner = _completing_runner(stores)

    report = await _scheduler(stores, runner).run_window()

    assert report.close_reason is WindowCloseReason.ESCALATION_BLOCKED
    assert runner.started == [free.id]  # type: ignore[attr-defined]
    assert report.remaining_queue == (blocked.id,)


@pytest.mark.asyncio
async def test_intake_rejected_ticket_does_not_block_its_project(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    vague = ticket_payload("T-9", project_ref="a")
    vague["acceptanceCriteria"] = ["TBD"]
    rejected = enqueue_ticket(vague, stores.work_items)
    assert not rejected.accepted
    valid = _queued(stores, "a", minutes=1)
    runner = _completing_runner(stores)

    report = await _scheduler(stores, runner).run_window()

    assert report.close_reason is WindowCloseReason.QUEUE_EMPTY
    assert runner.started == [valid.id]  # type: ignore[attr-defined]
    assert report.completed == (valid.id,)
    assert [record.reason for record in report.pending_escalations] == [
        EscalationReason.AMBIGUOUS_REQUIREMENT
    ]


@pytest.mark.asyncio
async def test_runner_failure_aborts_the_item(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    item = _queued(stores, "a")

    async def runner(work_item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        del work_item, checkpoint
        raise RuntimeError("boom")

    report = await _scheduler(stores, runner).run_window()

    stored = stores.work_items.get(item.id)
    assert stored is not None
    assert stored.phase is Phase.ABORTED
    assert report.aborted == (item.id,)
    notes = [entry.note for entry in stores.audit.list_for(item.id)]
    assert notes[-1] == "runner_failed"


@pytest.mark.asyncio
async def test_pause_request_requeues_running_item(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    item = _queued(stores, "a")
    scheduler: AttentionWindowScheduler

    async def runner(work_item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        window = scheduler.window
        assert window is not None
        stores.control_requests.request(window.id, "pause")
        while checkpoint.stop_reason() is None:
            await asyncio.sleep(0.01)
        return RunnerResult(work_item=work_item, active_seconds=5.0)

    scheduler = _scheduler(stores, runner)
    report = await scheduler.run_window()

    assert report.close_reason is WindowCloseReason.PAUSED
    assert report.remaining_queue == (item.id,)
    stored = stores.work_items.get(item.id)
    assert stored is not None
    assert stored.status is WorkItemStatus.QUEUED
    assert stores.control_requests.pending(report.window_id) == []


@pytest.mark.asyncio
async def test_cancel_request_pauses_the_target(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    item = _queued(stores, "a")
    scheduler: AttentionWindowScheduler

    async def runner(work_item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        window = scheduler.window
        assert window is not None
        stores.control_requests.request(window.id, "cancel", work_item_id=work_item.id)
        while checkpoint.stop_reason() is None:
            await asyncio.sleep(0.01)
        return RunnerResult(work_item=work_item, active_seconds=5.0)

    scheduler = _scheduler(stores, runner)
    report = await scheduler.run_window()

    assert report.close_reason is WindowCloseReason.CANCELLED
    assert report.paused == (item.id,)
    stored = stores.work_items.get(item.id)
    assert stored is not None
    assert stored.status is WorkItemStatus.PAUSED
    assert stored.phase is Phase.RED


@pytest.mark.asyncio
async def test_handoff_artifacts_are_written(tmp_path: Path) -> None:
    stores = open_stores(tmp_path)
    _queued(stores, "a")
    handoff = HandoffRenderer(tmp_path / "handoff")

    report = await _scheduler(stores, _completing_runner(stores), handoff=handoff).run_window()

    assert (tmp_path / "handoff" / f"{report.window_id}.json").is_file()
    assert (tmp_path / "handoff" / f"{report.window_id}.md").is_file()
