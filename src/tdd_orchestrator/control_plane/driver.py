"""
Per-work-item driver.

:class:`PhaseDriver` is the runner the attention-window scheduler launches for
each dequeued work item. It wires the phase machine to the outside world:

- asks the :class:`CodeChangeActor` for work whenever the machine needs it and
  then triggers the project's test command;
- waits for the next signal from the project's :class:`SignalSource`; a wait
  that exceeds the phase's ``wait_timeout_seconds`` becomes a ``Timeout``
  signal;
- applies the signal, performs snapshot capture and rollback, and persists
  the step (work item, audit entries, applied key, escalation) in one
  transaction before committing any tailer cursor;
- asks the :class:`ReviewActor` for a review after a clean refactor.

The scheduler checkpoint is consulted between steps only.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from tdd_orchestrator.config.schema import resolve_wait_timeouts
from tdd_orchestrator.constants import DEV_SERVER_STREAM, REVIEW_STREAM, TEST_OUTPUT_STREAM
from tdd_orchestrator.control_plane.actors import (
    ActorError,
    ChangeRequest,
    CodeChangeActor,
    ReviewActor,
)
from tdd_orchestrator.control_plane.phase_machine import (
    MachineSettings,
    PhaseStateMachine,
    TransitionOutcome,
)
from tdd_orchestrator.control_plane.scheduler import RunnerResult
from tdd_orchestrator.domain.models import WORK_PHASES, EscalationReason, Phase, WorkItemStatus
from tdd_orchestrator.domain.signals import PhaseTimeout, ProcessCrashed, Signal, SignalPayload
from tdd_orchestrator.supervision.log_tailer import (
    DEFAULT_MAX_READ_BYTES,
    DEFAULT_POLL_INTERVAL_SECONDS,
    CursorStore,
    LogTailer,
)
from tdd_orchestrator.supervision.process_supervisor import (
    ProcessHandle,
    ProcessStartError,
    ProcessSupervisor,
    SupervisorError,
    SupervisorSettings,
)
from tdd_orchestrator.utils.concurrency import CancellationToken
from tdd_orchestrator.workspace.snapshots import DirectorySnapshotStore, SnapshotError

if TYPE_CHECKING:
    from tdd_orchestrator.control_plane.scheduler import Checkpoint
    from tdd_orchestrator.domain.models import WorkItem
    from tdd_orchestrator.persistence.repositories import WorkItemRepo

TIMEOUT_STREAM: Final[str] = "timeout"
PROCESS_STREAM: Final[str] = "process"
DEFAULT_WAIT_TIMEOUT_SECONDS: Final[float] = 900.0


@dataclass(frozen=True, slots=True)
class ProjectSettings:
    """One entry of the ``projects`` config section."""

    name: str
    root: Path
    test_command: tuple[str, ...]
    dev_server_command: tuple[str, ...] | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> dict[str, ProjectSettings]:
        projects: dict[str, ProjectSettings] = {}
        for name, section in config.get("projects", {}).items():
            dev_server = section.get("dev_server_command")
            projects[name] = cls(
                name=name,
                root=Path(str(section["root"])),
                test_command=tuple(str(part) for part in section["test_command"]),
                dev_server_command=tuple(str(part) for part in dev_server) if dev_server else None,
            )
        return projects

    def stream_id(self, stream: str) -> str:
        return f"{self.name}/{stream}"


class SyntheticStream:
    """
    Key generator for signals that do not come from a log file.

    Timeouts, crash notices and review results still need unique, stable keys.
    Offsets continue after the highest one already applied for the work item,
    so a resumed run never reuses a key.
    """

    def __init__(self, stream_id: str, applied_keys: Iterable[str] = ()) -> None:
        self._stream_id = stream_id
        prefix = f"{stream_id}@0:"
        offsets = [
            int(key[len(prefix) :])
            for key in applied_keys
            if key.startswith(prefix) and key[len(prefix) :].isdigit()
        ]
        self._next = max(offsets, default=-1) + 1

    @property
    def stream_id(self) -> str:
        return self._stream_id

    def emit(self, payload: SignalPayload) -> Signal:
        offset = self._next
        self._next += 1
        return Signal(
            stream_id=self._stream_id, epoch=0, offset=offset, sequence=offset, payload=payload
        )


class SignalSource(Protocol):
    """Everything the driver needs from a project's processes and logs."""

    @property
    def last_wait_silent(self) -> bool: ...

    async def open(self) -> None: ...

    async def run_tests(self) -> None: ...

    async def next_signal(self, timeout_seconds: float) -> Signal | None: ...

    def commit(self) -> None: ...

    async def close(self) -> None: ...


SourceFactory = Callable[["ProjectSettings", "WorkItem", frozenset[str]], SignalSource]


class ProjectSignalSource:
    """
    Supervised processes plus tailers for one project, merged into one queue.

    The dev server (when configured) is started on :meth:`open` and kept
    running; each :meth:`run_tests` starts the test command as a one-shot
    process writing to the ``test-output`` log. Crash notices from the
    supervisor join the same queue as log signals.
    """

    def __init__(
        self,
        project: ProjectSettings,
        logs_root: Path | str,
        cursor_store: CursorStore,
        *,
        applied_keys: Iterable[str] = (),
        supervisor_settings: SupervisorSettings | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._project = project
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._supervisor = ProcessSupervisor(
            logs_root,
            project.name,
            settings=supervisor_settings,
            crash_sink=self._on_crash,
            env=env,
            logger=self._logger,
        )
        self._supervisor.on_restart(self._on_restart)
        self._poll_interval = poll_interval_seconds
        self._queue: asyncio.Queue[Signal] = asyncio.Queue()
        self._token = CancellationToken()
        self._tasks: list[asyncio.Task[None]] = []
        self._crashes = SyntheticStream(project.stream_id(PROCESS_STREAM), applied_keys)
        self._last_wait_silent = False

        streams = [TEST_OUTPUT_STREAM]
        if project.dev_server_command:
            streams.append(DEV_SERVER_STREAM)
        self._tailers = {
            stream: LogTailer(
                project.stream_id(stream),
                self._supervisor.log_path(stream),
                cursor_store=cursor_store,
                max_read_bytes=max_read_bytes,
                logger=self._logger,
            )
            for stream in streams
        }

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def last_wait_silent(self) -> bool:
        return self._last_wait_silent

    async def open(self) -> None:
        for tailer in self._tailers.values():
            self._tasks.append(
                asyncio.create_task(
                    tailer.follow(
                        self._queue, token=self._token, poll_interval_seconds=self._poll_interval
                    ),
                    name=f"tail:{tailer.stream_id}",
                )
            )
        if self._project.dev_server_command:
            await self._supervisor.start(
                self._project.dev_server_command, self._project.root, name=DEV_SERVER_STREAM
            )

    async def run_tests(self) -> None:
        await self._supervisor.start(
            self._project.test_command,
            self._project.root,
            name=TEST_OUTPUT_STREAM,
            one_shot=True,
        )

    async def next_signal(self, timeout_seconds: float) -> Signal | None:
        sizes = self._log_sizes()
        try:
            signal = await asyncio.wait_for(self._queue.get(), timeout=timeout_seconds)
        except (TimeoutError, asyncio.TimeoutError):
            self._last_wait_silent = self._log_sizes() == sizes
            return None
        self._last_wait_silent = False
        return signal

    def commit(self) -> None:
        # Cursors may only pass signals that have left the queue.
        if not self._queue.empty():
            return
        for tailer in self._tailers.values():
            tailer.commit()

    async def close(self) -> None:
        self._token.cancel()
        for task in self._tasks:
            await task
        self._tasks = []
        await self._supervisor.stop_all()
        self.commit()

    async def _on_crash(self, payload: ProcessCrashed, handle: ProcessHandle) -> None:
        await self._queue.put(self._crashes.emit(payload))

    def _on_restart(self, handle: ProcessHandle) -> None:
        tailer = self._tailers.get(handle.name)
        if tailer is not None:
            tailer.advance_epoch()

    def _log_sizes(self) -> tuple[int, ...]:
        sizes: list[int] = []
        for tailer in self._tailers.values():
            try:
                sizes.append(os.path.getsize(tailer.path))
            except OSError:
                sizes.append(0)
        return tuple(sizes)


class PhaseDriver:
    """Drive one work item until it finishes, escalates or the window stops."""

    def __init__(
        self,
        work_items: WorkItemRepo,
        projects: Mapping[str, ProjectSettings],
        source_factory: SourceFactory,
        code_actor: CodeChangeActor,
        review_actor: ReviewActor,
        snapshots: DirectorySnapshotStore,
        *,
        machine_settings: MachineSettings | None = None,
        wait_timeouts: Mapping[str, float] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._work_items = work_items
        self._projects = dict(projects)
        self._source_factory = source_factory
        self._code_actor = code_actor
        self._review_actor = review_actor
        self._snapshots = snapshots
        self._machine_settings = (
            machine_settings if machine_settings is not None else MachineSettings()
        )
        self._wait_timeouts = dict(wait_timeouts or {})
        self._monotonic = monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        work_items: WorkItemRepo,
        source_factory: SourceFactory,
        code_actor: CodeChangeActor,
        review_actor: ReviewActor,
        *,
        logger: Any | None = None,
    ) -> PhaseDriver:
        return cls(
            work_items,
            ProjectSettings.from_config(config),
            source_factory,
            code_actor,
            review_actor,
            DirectorySnapshotStore(config["paths"]["snapshot_root"]),
            machine_settings=MachineSettings.from_config(config),
            wait_timeouts=resolve_wait_timeouts(config),
            logger=logger,
        )

    def wait_timeout(self, phase: Phase) -> float:
        return float(self._wait_timeouts.get(phase.value, DEFAULT_WAIT_TIMEOUT_SECONDS))

    async def __call__(self, work_item: WorkItem, checkpoint: Checkpoint) -> RunnerResult:
        started = self._monotonic()
        log = self._logger.bind(work_item_id=work_item.id, project_ref=work_item.project_ref)
        applied_keys = self._work_items.applied_keys(work_item.id)
        machine = PhaseStateMachine(
            work_item, self._machine_settings, applied_keys=applied_keys, logger=self._logger
        )

        project = self._projects.get(work_item.project_ref)
        if project is None:
            log.error("project_not_configured")
            self._persist(machine.abort("project_not_configured"))
            return self._result(machine, started)

        source = self._source_factory(project, work_item, applied_keys)
        try:
            await source.open()
            await self._drive(machine, project, source, checkpoint, applied_keys, log)
        except ProcessStartError as exc:
            log.error("project_process_start_failed", error=str(exc))
            self._abort_if_running(machine, "process_start_failed")
        except SupervisorError as exc:
            log.error("project_supervision_failed", error=str(exc))
            self._abort_if_running(machine, "supervision_failed")
        finally:
            await source.close()
        return self._result(machine, started)

    async def _drive(
        self,
        machine: PhaseStateMachine,
        project: ProjectSettings,
        source: SignalSource,
        checkpoint: Checkpoint,
        applied_keys: frozenset[str],
        log: Any,
    ) -> None:
        item = machine.work_item
        timeouts = SyntheticStream(project.stream_id(TIMEOUT_STREAM), applied_keys)
        reviews = SyntheticStream(project.stream_id(REVIEW_STREAM), applied_keys)
        review_requested = item.phase is Phase.REVIEW or (
            item.phase is Phase.REFACTOR and item.review_pending
        )
        needs_action = not review_requested

        while item.phase in WORK_PHASES and item.status is WorkItemStatus.ACTIVE:
            stop = checkpoint.stop_reason()
            if stop is not None:
                log.info("work_item_checkpoint_stop", reason=stop.value, phase=item.phase.value)
                return

            if review_requested:
                review_requested = False
                signal = await self._request_review(machine, project, reviews, log)
                if signal is None:
                    return
            else:
                if needs_action:
                    needs_action = False
                    await self._request_change(machine, log)
                    await source.run_tests()
                phase = item.phase
                waited = self.wait_timeout(phase)
                received = await source.next_signal(waited)
                if received is None:
                    signal = timeouts.emit(
                        PhaseTimeout(
                            phase=phase,
                            waited_seconds=waited,
                            stream_silent=source.last_wait_silent,
                        )
                    )
                else:
                    signal = received

            outcome = machine.apply(
                signal, budget_remaining_seconds=checkpoint.budget_remaining_seconds
            )
            if outcome.applied:
                follow_up = self._side_effects(machine, outcome, project, log)
                self._persist(outcome)
                if follow_up is not None:
                    self._persist(follow_up)
            source.commit()
            needs_action = needs_action or outcome.needs_action
            review_requested = review_requested or outcome.review_requested

    async def _request_change(self, machine: PhaseStateMachine, log: Any) -> None:
        item = machine.work_item
        request = ChangeRequest(
            phase=item.phase,
            work_item=item,
            signal_context=tuple(signal.describe() for signal in machine.history),
        )
        try:
            result = await self._code_actor.act(request)
        except ActorError as exc:
            # The next test run still counts as an attempt, so this cannot loop forever.
            log.warning("code_change_actor_failed", phase=item.phase.value, error=str(exc))
            return
        if not result.change_set_applied:
            log.info("code_change_actor_no_change", phase=item.phase.value)

    async def _request_review(
        self,
        machine: PhaseStateMachine,
        project: ProjectSettings,
        reviews: SyntheticStream,
        log: Any,
    ) -> Signal | None:
        item = machine.work_item
        try:
            changeset_ref = self._snapshots.capture(project.root, item.id)
            completed = await self._review_actor.review(changeset_ref)
        except (ActorError, SnapshotError, OSError) as exc:
            log.warning("review_unavailable", error=str(exc))
            self._persist(
                machine.escalate(
                    EscalationReason.EXTERNAL_DEPENDENCY_UNAVAILABLE,
                    signal_id=reviews.stream_id,
                    detail=f"review could not be obtained: {exc}",
                )
            )
            return None
        return reviews.emit(completed)

    def _side_effects(
        self,
        machine: PhaseStateMachine,
        outcome: TransitionOutcome,
        project: ProjectSettings,
        log: Any,
    ) -> TransitionOutcome | None:
        """Capture or restore snapshots; an environment failure aborts the item."""

        item = outcome.work_item
        try:
            if outcome.rollback_to is not None:
                self._snapshots.restore(outcome.rollback_to, project.root)
                log.info("work_tree_rolled_back", snapshot_ref=outcome.rollback_to)
            if outcome.capture_snapshot:
                item.green_snapshot_ref = self._snapshots.capture(project.root, item.id)
                log.info("green_snapshot_captured", snapshot_ref=item.green_snapshot_ref)
        except (SnapshotError, OSError) as exc:
            log.error("snapshot_failed", error=str(exc))
            if item.phase in WORK_PHASES:
                return machine.abort("snapshot_failed")
        return None

    def _abort_if_running(self, machine: PhaseStateMachine, reason_code: str) -> None:
        if machine.work_item.phase in WORK_PHASES:
            self._persist(machine.abort(reason_code))

    def _persist(self, outcome: TransitionOutcome) -> None:
        self._work_items.record_step(
            outcome.work_item,
            audit_entries=outcome.audit_entries,
            applied_signal_key=outcome.signal_key if outcome.applied else None,
            escalation=outcome.escalation,
        )

    def _result(self, machine: PhaseStateMachine, started: float) -> RunnerResult:
        return RunnerResult(
            work_item=machine.work_item,
            active_seconds=max(self._monotonic() - started, 0.0),
        )


def project_source_factory(
    config: Mapping[str, Any],
    cursor_store: CursorStore,
    *,
    logger: Any | None = None,
) -> SourceFactory:
    """Build the :class:`SourceFactory` used by ``tddo run``."""

    supervisor_settings = SupervisorSettings.from_config(config["supervisor"])
    tailer = config["tailer"]

    def factory(
        project: ProjectSettings, work_item: WorkItem, applied_keys: frozenset[str]
    ) -> SignalSource:
        return ProjectSignalSource(
            project,
            config["paths"]["logs_root"],
            cursor_store,
            applied_keys=applied_keys,
            supervisor_settings=supervisor_settings,
            poll_interval_seconds=float(tailer["poll_interval_seconds"]),
            max_read_bytes=int(tailer["max_read_bytes"]),
            logger=logger,
        )

    return factory


__all__ = [
    "DEFAULT_WAIT_TIMEOUT_SECONDS",
    "PROCESS_STREAM",
    "TIMEOUT_STREAM",
    "PhaseDriver",
    "ProjectSettings",
    "ProjectSignalSource",
    "SignalSource",
    "SourceFactory",
    "SyntheticStream",
    "project_source_factory",
]
