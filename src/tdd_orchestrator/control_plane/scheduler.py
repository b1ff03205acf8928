"""
Attention-window scheduling.

An attention window is one unattended session with a fixed budget of
autonomous time. The scheduler repeatedly picks the oldest queued work item of
every idle project, runs the selected items concurrently (one per project) and
stops when the queue drains, the budget is spent, every remaining item is
blocked behind an escalation, or an operator asks it to.

Elapsed autonomous time is the sum of the active time each run reports, so two
items that each take an hour on different projects consume two hours of
budget even when they overlap on the wall clock.

Stop requests never preempt a runner: runners consult their
:class:`Checkpoint` between atomic steps and return on their own.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from tdd_orchestrator.control_plane.phase_machine import PhaseStateMachine, TransitionOutcome
from tdd_orchestrator.domain.ids import generate_window_id
from tdd_orchestrator.domain.models import (
    WORK_PHASES,
    AttentionWindow,
    EscalationReason,
    HandoffReport,
    WindowCloseReason,
    WorkItem,
    WorkItemStatus,
    utc_now,
)

if TYPE_CHECKING:
    from tdd_orchestrator.observability.handoff import HandoffRenderer
    from tdd_orchestrator.persistence.repositories import (
        AttentionWindowRepo,
        ControlRequestRepo,
        EscalationRepo,
        WorkItemRepo,
    )

RUNNER_FAILURE_CODE = "runner_failed"


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    """Window limits taken from the ``attention`` config section."""

    budget_seconds: float
    max_concurrent_projects: int = 4
    checkpoint_interval_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.budget_seconds < 0:
            raise ValueError("budget_seconds must be >= 0")
        if self.max_concurrent_projects <= 0:
            raise ValueError("max_concurrent_projects must be > 0")
        if self.checkpoint_interval_seconds <= 0:
            raise ValueError("checkpoint_interval_seconds must be > 0")

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], *, budget_seconds: float | None = None
    ) -> SchedulerSettings:
        attention = config["attention"]
        return cls(
            budget_seconds=float(
                attention["budget_seconds"] if budget_seconds is None else budget_seconds
            ),
            max_concurrent_projects=int(attention["max_concurrent_projects"]),
            checkpoint_interval_seconds=float(attention["checkpoint_interval_seconds"]),
        )


@dataclass(frozen=True, slots=True)
class RunnerResult:
    """What a runner hands back once it stops driving a work item."""

    work_item: WorkItem
    active_seconds: float


class WorkItemRunner(Protocol):
    def __call__(self, work_item: WorkItem, checkpoint: Checkpoint) -> Awaitable[RunnerResult]: ...


def select_next(
    queued: Sequence[WorkItem],
    *,
    active_projects: set[str] | frozenset[str],
    blocked_projects: set[str] | frozenset[str],
    limit: int,
) -> list[WorkItem]:
    """
    Pick at most ``limit`` queued items, oldest first, at most one per project.

    Projects that already run an item or are blocked by an escalation are
    skipped. The result only depends on the arguments.
    """

    if limit <= 0:
        return []
    ordered = sorted(
        (item for item in queued if item.status is WorkItemStatus.QUEUED),
        key=lambda item: (item.created_at, item.id),
    )
    taken: set[str] = set()
    selected: list[WorkItem] = []
    for item in ordered:
        project = item.project_ref
        if project in active_projects or project in blocked_projects or project in taken:
            continue
        taken.add(project)
        selected.append(item)
        if len(selected) >= limit:
            break
    return selected


class _WindowState:
    """Mutable bookkeeping shared between the scheduler loop and its checkpoints."""

    def __init__(self, budget_seconds: float, monotonic: Callable[[], float]) -> None:
        self.budget_seconds = budget_seconds
        self.committed_seconds = 0.0
        self.stop: WindowCloseReason | None = None
        self.cancel_target: str | None = None
        self.in_flight: dict[str, float] = {}
        self._monotonic = monotonic

    def in_flight_seconds(self) -> float:
        now = self._monotonic()
        return sum(now - started for started in self.in_flight.values())

    def remaining_seconds(self) -> float:
        return self.budget_seconds - self.committed_seconds - self.in_flight_seconds()


class Checkpoint:
    """Handed to a runner; consulted only between atomic steps."""

    def __init__(self, state: _WindowState, work_item_id: str) -> None:
        self._state = state
        self._work_item_id = work_item_id

    @property
    def work_item_id(self) -> str:
        return self._work_item_id

    @property
    def budget_remaining_seconds(self) -> float:
        return self._state.remaining_seconds()

    def stop_reason(self) -> WindowCloseReason | None:
        if self._state.stop is not None:
            return self._state.stop
        if self._state.remaining_seconds() <= 0:
            return WindowCloseReason.BUDGET_EXHAUSTED
        return None


class AttentionWindowScheduler:
    """Run queued work items inside one budgeted attention window."""

    def __init__(
        self,
        work_items: WorkItemRepo,
        windows: AttentionWindowRepo,
        escalations: EscalationRepo,
        control_requests: ControlRequestRepo,
        runner: WorkItemRunner,
        settings: SchedulerSettings,
        *,
        handoff: HandoffRenderer | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._work_items = work_items
        self._windows = windows
        self._escalations = escalations
        self._control_requests = control_requests
        self._runner = runner
        self._settings = settings
        self._handoff = handoff
        self._clock = clock
        self._monotonic = monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._state = _WindowState(settings.budget_seconds, monotonic)
        self._window: AttentionWindow | None = None

    @property
    def window(self) -> AttentionWindow | None:
        return self._window

    def request_pause(self) -> None:
        self._request_stop(WindowCloseReason.PAUSED)

    def request_cancel(self, work_item_id: str | None = None) -> None:
        if work_item_id is not None:
            self._state.cancel_target = work_item_id
        self._request_stop(WindowCloseReason.CANCELLED)

    async def run_window(self) -> HandoffReport:
        """Run until the window closes and return its hand-off report."""

        started_wall = self._monotonic()
        queued = self._work_items.list_queued()
        window = AttentionWindow(
            id=generate_window_id(),
            started_at=self._clock(),
            budget_seconds=self._settings.budget_seconds,
            queue_snapshot=tuple(item.id for item in queued),
            pid=os.getpid(),
        )
        self._window = self._windows.open(window)
        log = self._logger.bind(window_id=window.id)
        log.info(
            "attention_window_opened",
            budget_seconds=window.budget_seconds,
            queued=len(queued),
            max_concurrent_projects=self._settings.max_concurrent_projects,
        )

        completed: list[str] = []
        aborted: list[str] = []
        running: dict[asyncio.Task[RunnerResult], WorkItem] = {}
        aborted_projects: set[str] = set()
        close_reason: WindowCloseReason | None = None

        try:
            while True:
                self._poll_control_requests(window.id)
                stop = self._state.stop
                if stop is None and self._state.remaining_seconds() <= 0:
                    stop = WindowCloseReason.BUDGET_EXHAUSTED
                if stop is not None:
                    close_reason = stop
                    break

                queued = self._work_items.list_queued()
                blocked = self._escalated_projects() | aborted_projects
                active_projects = {item.project_ref for item in running.values()}
                selected = select_next(
                    queued,
                    active_projects=active_projects,
                    blocked_projects=blocked,
                    limit=self._settings.max_concurrent_projects - len(running),
                )
                for item in selected:
                    running[self._launch(item, window.id)] = item

                if not running:
                    close_reason = (
                        WindowCloseReason.QUEUE_EMPTY
                        if not queued
                        else WindowCloseReason.ESCALATION_BLOCKED
                    )
                    break

                done, _ = await asyncio.wait(
                    running,
                    timeout=self._settings.checkpoint_interval_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    item = running.pop(task)
                    finished = self._collect(task, item)
                    if finished.status is WorkItemStatus.DONE:
                        completed.append(finished.id)
                    elif finished.status is WorkItemStatus.ABORTED:
                        aborted.append(finished.id)
                        aborted_projects.add(finished.project_ref)
        finally:
            if running:
                # Runners see the stop at their next checkpoint and return.
                if self._state.stop is None:
                    self._state.stop = close_reason or WindowCloseReason.CANCELLED
                done, _ = await asyncio.wait(running)
                for task in done:
                    item = running.pop(task)
                    finished = self._collect(task, item)
                    if finished.status is WorkItemStatus.DONE:
                        completed.append(finished.id)
                    elif finished.status is WorkItemStatus.ABORTED:
                        aborted.append(finished.id)

        if close_reason is None:
            raise RuntimeError("attention window loop exited without a close reason")
        if close_reason is WindowCloseReason.CANCELLED:
            self._pause_cancel_target()
        report = self._build_report(
            window,
            close_reason,
            completed=completed,
            aborted=aborted,
            wall_clock_seconds=self._monotonic() - started_wall,
        )
        self._window = self._windows.close(window, report)
        if self._handoff is not None:
            artifacts = self._handoff.write(report)
            log.info("handoff_written", markdown_path=str(artifacts.markdown_path))
        log.info(
            "attention_window_closed",
            close_reason=close_reason.value,
            elapsed_seconds=report.elapsed_seconds,
            completed=len(report.completed),
            pending_escalations=len(report.pending_escalations),
            aborted=len(report.aborted),
            remaining_queue=len(report.remaining_queue),
        )
        return report

    # ----- internals -----

    def _request_stop(self, reason: WindowCloseReason) -> None:
        if self._state.stop is None:
            self._state.stop = reason
            self._logger.info("attention_window_stop_requested", reason=reason.value)

    def _poll_control_requests(self, window_id: str) -> None:
        for request in self._control_requests.pending(window_id):
            if request.kind == "cancel":
                self.request_cancel(request.work_item_id)
            else:
                self.request_pause()
            self._control_requests.consume(request.id)

    def _escalated_projects(self) -> set[str]:
        # Tickets rejected at intake never touched the working tree.
        return {
            item.project_ref
            for item in self._work_items.list_items(
                statuses=[WorkItemStatus.ESCALATED], limit=1000
            )
            if item.escalation_reason is not EscalationReason.AMBIGUOUS_REQUIREMENT
        }

    def _launch(self, item: WorkItem, window_id: str) -> asyncio.Task[RunnerResult]:
        item.status = WorkItemStatus.ACTIVE
        item.updated_at = self._clock()
        self._work_items.save(item)
        self._state.in_flight[item.id] = self._monotonic()
        self._logger.info(
            "work_item_started",
            window_id=window_id,
            work_item_id=item.id,
            project_ref=item.project_ref,
            phase=item.phase.value,
        )
        checkpoint = Checkpoint(self._state, item.id)
        return asyncio.create_task(self._runner(item, checkpoint), name=f"work-item-{item.id}")

    def _collect(self, task: asyncio.Task[RunnerResult], item: WorkItem) -> WorkItem:
        started = self._state.in_flight.pop(item.id, self._monotonic())
        error = task.exception() if not task.cancelled() else asyncio.CancelledError()
        if error is None:
            result = task.result()
            self._state.committed_seconds += max(result.active_seconds, 0.0)
            finished = result.work_item
        else:
            self._state.committed_seconds += max(self._monotonic() - started, 0.0)
            finished = self._work_items.get(item.id) or item
            self._logger.error(
                "work_item_runner_failed",
                work_item_id=item.id,
                project_ref=item.project_ref,
                error=repr(error),
            )
            if finished.phase in WORK_PHASES:
                self._persist(PhaseStateMachine(finished).abort(RUNNER_FAILURE_CODE))
            return finished

        if finished.phase in WORK_PHASES and finished.status is WorkItemStatus.ACTIVE:
            self._settle_stopped(finished)
        self._logger.info(
            "work_item_finished",
            work_item_id=finished.id,
            project_ref=finished.project_ref,
            phase=finished.phase.value,
            status=finished.status.value,
            active_seconds=result.active_seconds,
        )
        return finished

    def _settle_stopped(self, item: WorkItem) -> None:
        """Decide what a runner that returned mid-phase leaves behind."""

        stop = self._state.stop
        if stop is None and self._state.remaining_seconds() <= 0:
            stop = WindowCloseReason.BUDGET_EXHAUSTED
        machine = PhaseStateMachine(item)
        if stop is WindowCloseReason.BUDGET_EXHAUSTED:
            self._persist(
                machine.escalate(
                    EscalationReason.ATTENTION_BUDGET_EXPIRED,
                    detail="attention window budget exhausted",
                )
            )
        elif stop is WindowCloseReason.CANCELLED and self._state.cancel_target in (None, item.id):
            self._persist(machine.pause())
        else:
            item.status = WorkItemStatus.QUEUED
            item.updated_at = self._clock()
            self._work_items.save(item)

    def _pause_cancel_target(self) -> None:
        target = self._state.cancel_target
        if target is None:
            return
        item = self._work_items.get(target)
        if item is None or item.status is not WorkItemStatus.QUEUED:
            return
        if item.phase in WORK_PHASES:
            self._persist(PhaseStateMachine(item).pause())

    def _persist(self, outcome: TransitionOutcome) -> None:
        self._work_items.record_step(
            outcome.work_item,
            audit_entries=outcome.audit_entries,
            escalation=outcome.escalation,
        )

    def _build_report(
        self,
        window: AttentionWindow,
        close_reason: WindowCloseReason,
        *,
        completed: Sequence[str],
        aborted: Sequence[str],
        wall_clock_seconds: float,
    ) -> HandoffReport:
        paused = self._work_items.list_items(statuses=[WorkItemStatus.PAUSED], limit=1000)
        remaining = self._work_items.list_queued()
        return HandoffReport(
            window_id=window.id,
            started_at=window.started_at,
            closed_at=self._clock(),
            close_reason=close_reason,
            budget_seconds=window.budget_seconds,
            elapsed_seconds=self._state.committed_seconds,
            wall_clock_seconds=max(wall_clock_seconds, 0.0),
            completed=tuple(completed),
            pending_escalations=tuple(self._escalations.list_open(limit=1000)),
            aborted=tuple(aborted),
            paused=tuple(item.id for item in paused),
            remaining_queue=tuple(item.id for item in remaining),
        )


__all__ = [
    "RUNNER_FAILURE_CODE",
    "AttentionWindowScheduler",
    "Checkpoint",
    "RunnerResult",
    "SchedulerSettings",
    "WorkItemRunner",
    "select_next",
]
